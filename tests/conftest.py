"""
Pytest Configuration and Fixtures

Builders for real input documents and a stand-in PDF converter.
"""

import stat
import sys
import zipfile

import pytest
from docx import Document

from quire.configuration import QuireConfig


CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

CONTENT_OPF = """<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="id">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:identifier id="id">quire-test</dc:identifier>
    <dc:title>Test Book</dc:title>
  </metadata>
  <manifest/>
  <spine/>
</package>
"""

CHAPTER_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml">
<head><title>{title}</title></head>
<body>
{blocks}
</body>
</html>
"""


ENTITY_CHAPTER = b"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.1//EN" "http://www.w3.org/TR/xhtml11/DTD/xhtml11.dtd">
<html xmlns="http://www.w3.org/1999/xhtml">
<head><title>Entities</title></head>
<body>
<p>Hello&nbsp;world &mdash; caf&eacute;</p>
<p>Fish &amp; chips</p>
</body>
</html>
"""

# Not well-formed XML: the <br> is never closed.
LOOSE_HTML_CHAPTER = b"<html><body><p>One<br>Two</p><p>Three</p><div>Loose text</div></body></html>"


def chapter_markup(paragraphs, title="Chapter"):
    blocks = "\n".join(f"<p>{text}</p>" for text in paragraphs)
    return CHAPTER_TEMPLATE.format(title=title, blocks=blocks).encode("utf-8")


@pytest.fixture
def make_text_file(tmp_path):
    """Write a UTF-8 text file and return its path."""

    def _make(text, name="input.txt"):
        path = tmp_path / name
        path.write_bytes(text.encode("utf-8"))
        return path

    return _make


@pytest.fixture
def make_docx(tmp_path):
    """Create a Word document with one paragraph per entry ("" for empty)."""

    def _make(paragraphs, name="input.docx"):
        document = Document()
        for text in paragraphs:
            document.add_paragraph(text)
        path = tmp_path / name
        document.save(str(path))
        return path

    return _make


@pytest.fixture
def make_epub(tmp_path):
    """Create an EPUB archive from ``{member_name: [paragraph, ...]}``.

    A ``bytes`` value is stored as the chapter markup unchanged.
    """

    def _make(chapters, name="input.epub"):
        path = tmp_path / name
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
            archive.writestr("META-INF/container.xml", CONTAINER_XML, compress_type=zipfile.ZIP_DEFLATED)
            archive.writestr("OEBPS/content.opf", CONTENT_OPF, compress_type=zipfile.ZIP_DEFLATED)
            for member, paragraphs in chapters.items():
                content = paragraphs if isinstance(paragraphs, bytes) else chapter_markup(paragraphs)
                archive.writestr(member, content, compress_type=zipfile.ZIP_DEFLATED)
        return path

    return _make


def _write_script(path, body):
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


needs_posix_shell = pytest.mark.skipif(
    sys.platform.startswith("win"), reason="fake converter is a POSIX shell script"
)


@pytest.fixture
def fake_converter(tmp_path, make_docx):
    """An executable that "converts" any PDF by copying a prepared DOCX.

    Called as ``soffice --headless --convert-to docx --outdir DIR PDF``.
    """

    def _make(paragraphs):
        source = make_docx(paragraphs, name="converted-source.docx")
        script = tmp_path / "fake-soffice"
        body = (
            'outdir="$5"\n'
            'name=$(basename "$6" .pdf)\n'
            f'cp "{source}" "$outdir/$name.docx"\n'
        )
        return _write_script(script, body)

    return _make


@pytest.fixture
def failing_converter(tmp_path):
    def _make(exit_code=3, message="conversion exploded"):
        script = tmp_path / "broken-soffice"
        body = f'echo "{message}" >&2\nexit {exit_code}\n'
        return _write_script(script, body)

    return _make


@pytest.fixture
def pdf_file(tmp_path):
    path = tmp_path / "report.pdf"
    path.write_bytes(b"%PDF-1.4\n% not a real pdf\n")
    return path


@pytest.fixture
def clean_environment(monkeypatch, tmp_path):
    """Isolate configuration from the developer's home and environment."""

    for key in QuireConfig.model_fields:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("QUIRE_DEBUG_PROVIDER", raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home


def read_member(path, name):
    with zipfile.ZipFile(path) as archive:
        return archive.read(name)


def member_names(path):
    with zipfile.ZipFile(path) as archive:
        return archive.namelist()
