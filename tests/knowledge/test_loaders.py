"""Tests for file type detection and text extraction."""

from __future__ import annotations

import sys

import pytest

from src.knowledge.errors import ExtractionError, UnsupportedFileTypeError
from src.knowledge.ingestion.loaders import DocumentLoader, detect_file_type, extract_text
from src.knowledge.models import DocumentType


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("report.pdf", DocumentType.PDF),
        ("contract.DOCX", DocumentType.DOCX),
        ("notes.md", DocumentType.MD),
        ("readme.txt", DocumentType.TXT),
    ],
)
def test_detect_file_type(name, expected):
    assert detect_file_type(name) == expected


@pytest.mark.parametrize("name", ["setup.exe", "archive.tar.gz", "no_extension", "notes.markdown"])
def test_detect_file_type_rejects_unsupported(name):
    with pytest.raises(UnsupportedFileTypeError):
        detect_file_type(name)


def test_markdown_frontmatter_tags_are_extracted(write_file):
    path = write_file(
        "note.md",
        "---\ntitle: Weekly sync\ntags: [planning, roadmap]\n---\n# Agenda\nShip it.\n",
    )

    extracted = DocumentLoader().load(path)

    assert extracted.text.startswith("# Agenda")
    assert extracted.frontmatter["title"] == "Weekly sync"
    assert extracted.tags == ["planning", "roadmap"]


def test_markdown_comma_separated_tags(write_file):
    path = write_file("note.md", "---\ntags: alpha, beta\n---\nBody\n")

    assert DocumentLoader().load(path).tags == ["alpha", "beta"]


def test_markdown_without_frontmatter_keeps_text(write_file):
    path = write_file("plain.md", "# Title\n\nJust text.")

    extracted = DocumentLoader().load(path)

    assert extracted.text == "# Title\n\nJust text."
    assert extracted.tags == []


def test_text_with_legacy_encoding_is_decoded(write_file):
    content = ("Le café est très bon et la crème brûlée aussi. " * 20)
    path = write_file("legacy.txt", content.encode("latin-1"))

    text = extract_text(path)

    assert text.startswith("Le caf")
    assert "est tr" in text


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        DocumentLoader().load(tmp_path / "absent.txt")


def test_pdf_without_unstructured_raises_extraction_error(write_file, monkeypatch):
    path = write_file("scan.pdf", b"%PDF-1.4 not really a pdf")
    monkeypatch.setitem(sys.modules, "unstructured.partition.pdf", None)

    with pytest.raises(ExtractionError, match="unstructured"):
        DocumentLoader().load(path)
