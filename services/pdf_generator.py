"""
Генератор PDF с вердиктом Dr. Marcie
"""

from fpdf import FPDF
from fpdf.enums import XPos, YPos
from datetime import datetime
import os

from .utils import strip_markdown

NEXT_LINE = {"new_x": XPos.LMARGIN, "new_y": YPos.NEXT}


class PDF(FPDF):
    def header(self):
        # Заголовок
        self.set_font('Helvetica', 'B', 20)
        self.set_text_color(220, 38, 38)
        self.cell(0, 10, 'Dr. Marcie - SOS Verdict', align='C', **NEXT_LINE)
        self.ln(5)

    def footer(self):
        self.set_y(-15)
        self.set_font('Helvetica', '', 8)
        self.set_text_color(156, 163, 175)
        self.cell(0, 10, f'Created: {datetime.now().strftime("%d.%m.%Y %H:%M")}', align='C')


def pdf_safe(text) -> str:
    """Встроенные шрифты PDF понимают только latin-1"""
    return strip_markdown(str(text or "")).encode('latin-1', 'ignore').decode('latin-1').strip()


def _section(pdf: PDF, title: str, body) -> None:
    lines = body if isinstance(body, list) else [body]
    lines = [pdf_safe(line) for line in lines]
    lines = [line for line in lines if line]
    if not lines:
        return

    pdf.ln(3)
    pdf.set_font('Helvetica', 'B', 13)
    pdf.set_text_color(102, 126, 234)
    pdf.cell(0, 8, title, **NEXT_LINE)
    pdf.set_font('Helvetica', '', 11)
    pdf.set_text_color(75, 85, 99)
    for line in lines:
        prefix = '- ' if isinstance(body, list) else ''
        pdf.multi_cell(0, 7, f'{prefix}{line}', **NEXT_LINE)


def generate_verdict_pdf(analysis: dict, role: str, output_path: str = None) -> str:
    """
    PDF с вердиктом для одного партнёра

    В файл попадают общая часть анализа и только то, что адресовано
    этому партнёру (его действия, сценарий извинения, личный отзыв).

    Args:
        analysis: SOSAnalysis.analysis
        role: "partner1" или "partner2"
        output_path: путь для сохранения PDF

    Returns:
        str: путь к созданному PDF файлу
    """

    if output_path is None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_path = f"reports/sos_verdict_{role}_{timestamp}.pdf"

    # Создаём директорию если её нет
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    fault = analysis.get('fault_assignment', {})
    own_fault = fault.get(f'{role}_fault', 50)
    other_role = 'partner2' if role == 'partner1' else 'partner1'
    other_fault = fault.get(f'{other_role}_fault', 50)

    # Цвет блока зависит от доли вины
    if own_fault > other_fault:
        color = (239, 68, 68)  # красный
    elif own_fault < other_fault:
        color = (16, 185, 129)  # зелёный
    else:
        color = (245, 158, 11)  # оранжевый

    pdf = PDF()
    pdf.add_page()

    # Блок с долей вины
    pdf.set_fill_color(*color)
    pdf.set_text_color(255, 255, 255)
    pdf.set_font('Helvetica', 'B', 32)
    pdf.cell(0, 26, f'Your share: {own_fault}%', align='C', fill=True, **NEXT_LINE)
    pdf.set_font('Helvetica', 'B', 14)
    pdf.set_text_color(31, 41, 55)
    pdf.cell(0, 12, f'Your partner: {other_fault}%', align='C', **NEXT_LINE)
    pdf.ln(4)

    # Разделитель
    pdf.set_draw_color(229, 231, 235)
    pdf.line(20, pdf.get_y(), 190, pdf.get_y())
    pdf.ln(4)

    recommendations = analysis.get('recommendations', {})
    apology = analysis.get('apology_required', {})
    feedback = analysis.get('personalized_feedback', {}).get(role, {})

    _section(pdf, 'Summary', analysis.get('summary'))
    _section(pdf, 'Root Cause', analysis.get('root_cause'))
    _section(pdf, 'Who Owns What', fault.get('explanation'))
    _section(pdf, 'Communication Breakdown', analysis.get('communication_breakdown'))
    _section(pdf, 'Emotional Validation', analysis.get('emotional_validation'))
    _section(pdf, 'Your Next Steps', list(recommendations.get(f'{role}_actions', [])))
    _section(pdf, 'Together', list(recommendations.get('joint_actions', [])))
    if apology.get(f'{role}_should_apologize'):
        _section(pdf, 'Your Apology Script', apology.get('apology_scripts', {}).get(role))
    _section(pdf, 'Healing Challenges', list(analysis.get('healing_challenges', [])))
    _section(pdf, 'Dr. Marcie, Just For You', feedback.get('message'))
    _section(pdf, 'Action Items', list(feedback.get('action_items', [])))

    # Сохраняем PDF
    pdf.output(output_path)

    return output_path
