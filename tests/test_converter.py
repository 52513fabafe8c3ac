"""
Tests for the external PDF converter adapter.
"""

import pathlib

import pytest

from quire import converter as converter_module
from quire.converter import (
    convert_pdf_to_docx,
    converted_docx,
    find_converter,
    is_converter_available,
)
from quire.errors import ConversionFailedError, ConverterNotFoundError

from conftest import needs_posix_shell


@pytest.fixture
def no_system_converter(monkeypatch):
    monkeypatch.setattr(converter_module.shutil, "which", lambda name: None)
    monkeypatch.setattr(converter_module, "_WINDOWS_PATHS", ())
    monkeypatch.setattr(converter_module, "_MACOS_PATHS", ())


class TestDiscovery:
    def test_explicit_path_wins(self, tmp_path, no_system_converter):
        executable = tmp_path / "soffice"
        executable.write_text("")

        assert find_converter(str(executable)) == executable
        assert is_converter_available(str(executable)) is True

    def test_nothing_installed(self, tmp_path, no_system_converter):
        assert find_converter(str(tmp_path / "absent")) is None
        assert is_converter_available() is False

    def test_missing_converter_raises(self, pdf_file, tmp_path, no_system_converter):
        with pytest.raises(ConverterNotFoundError):
            convert_pdf_to_docx(pdf_file, tmp_path)


@needs_posix_shell
class TestConversion:
    def test_successful_conversion(self, pdf_file, fake_converter, tmp_path):
        converter = fake_converter(["Hello"])
        outdir = tmp_path / "out"
        outdir.mkdir()

        result = convert_pdf_to_docx(pdf_file, outdir, converter=str(converter))

        assert result == outdir / "report.docx"
        assert result.is_file()

    def test_failure_carries_diagnostics(self, pdf_file, failing_converter, tmp_path):
        converter = failing_converter(exit_code=3, message="conversion exploded")

        with pytest.raises(ConversionFailedError) as excinfo:
            convert_pdf_to_docx(pdf_file, tmp_path, converter=str(converter))

        assert "exit code 3" in str(excinfo.value)
        assert "conversion exploded" in excinfo.value.diagnostics

    def test_missing_output_file(self, pdf_file, failing_converter, tmp_path):
        converter = failing_converter(exit_code=0, message="")

        with pytest.raises(ConversionFailedError, match="no output"):
            convert_pdf_to_docx(pdf_file, tmp_path, converter=str(converter))

    def test_temporary_directory_is_removed(self, pdf_file, fake_converter):
        converter = fake_converter(["Hello"])

        with converted_docx(pdf_file, converter=str(converter)) as docx_path:
            workdir = pathlib.Path(docx_path).parent
            assert docx_path.is_file()

        assert not workdir.exists()

    def test_temporary_directory_removed_on_failure(self, pdf_file, failing_converter, monkeypatch):
        converter = failing_converter()
        created = []
        original = converter_module.tempfile.TemporaryDirectory

        def tracking(*args, **kwargs):
            directory = original(*args, **kwargs)
            created.append(pathlib.Path(directory.name))
            return directory

        monkeypatch.setattr(converter_module.tempfile, "TemporaryDirectory", tracking)

        with pytest.raises(ConversionFailedError):
            with converted_docx(pdf_file, converter=str(converter)):
                pass

        assert created and not created[0].exists()
