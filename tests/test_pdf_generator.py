"""
Тесты PDF с вердиктом
"""

from services.pdf_generator import generate_verdict_pdf, pdf_safe

from .conftest import SAMPLE_ANALYSIS as ANALYSIS


class TestVerdictPdf:

    def test_pdf_is_written_for_each_role(self, tmp_path):
        for role in ("partner1", "partner2"):
            path = generate_verdict_pdf(ANALYSIS, role, str(tmp_path / "out" / f"{role}.pdf"))
            with open(path, "rb") as f:
                assert f.read(4) == b"%PDF"

    def test_missing_sections_are_skipped(self, tmp_path):
        path = generate_verdict_pdf({}, "partner2", str(tmp_path / "empty.pdf"))
        with open(path, "rb") as f:
            assert f.read(4) == b"%PDF"

    def test_pdf_safe_drops_unsupported_characters(self):
        assert pdf_safe("Valid 💛 **bold**") == "Valid  bold"
        assert pdf_safe(None) == ""
