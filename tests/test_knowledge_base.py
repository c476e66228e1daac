import tempfile
import unittest
from pathlib import Path

import fitz

from askgate.knowledge_base import (
    KB_BEGIN_BANNER,
    KB_END_BANNER,
    KB_FULL_INSTRUCTION,
    STATUS_COMPLETED,
    STATUS_FAILED,
    DocumentProcessingError,
    KnowledgeBase,
    UnsupportedDocumentError,
)
from askgate.pdf_markdown import detect_heading_level, pdf_to_markdown, text_to_markdown
from askgate.storage_provider import LocalFileStorageProvider


def _pdf_bytes(lines):
    doc = fitz.open()
    page = doc.new_page()
    for idx, line in enumerate(lines):
        page.insert_text((72, 72 + idx * 24), line)
    data = doc.tobytes()
    doc.close()
    return data


class TestKnowledgeBase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.kb = KnowledgeBase(root / "kb", root / "kb.sqlite")

    def tearDown(self):
        self.kb.close()
        self.tmp.cleanup()

    def test_markdown_upload_completes_with_extracted_text(self):
        doc = self.kb.add_document("notes.md", "# Notes\n\nDeploy with make.\n".encode("utf-8"))

        self.assertEqual(doc["status"], STATUS_COMPLETED)
        self.assertEqual(doc["title"], "notes.md")
        self.assertEqual(doc["file_type"], ".md")
        self.assertTrue(doc["doc_id"].startswith("doc_"))
        self.assertTrue(Path(doc["stored_file"]).exists())
        self.assertTrue(doc["text_file"].endswith(".extracted.md"))
        self.assertIn("Deploy with make.", Path(doc["text_file"]).read_text(encoding="utf-8"))

    def test_unsupported_type_is_rejected_without_a_row(self):
        with self.assertRaises(UnsupportedDocumentError):
            self.kb.add_document("archive.zip", b"PK")
        self.assertEqual(self.kb.list_documents(), [])

    def test_broken_pdf_marks_document_failed(self):
        with self.assertRaises(DocumentProcessingError):
            self.kb.add_document("broken.pdf", b"definitely not a pdf")
        docs = self.kb.list_documents()
        self.assertEqual(len(docs), 1)
        self.assertEqual(docs[0]["status"], STATUS_FAILED)
        self.assertTrue(docs[0]["error"])
        self.assertEqual(self.kb.build_context(), "")

    def test_pdf_upload_is_converted_to_markdown(self):
        data = _pdf_bytes(["Chapter 1 Getting Started", "Install the tool before use.", "1.2 Configuration"])
        doc = self.kb.add_document("guide.pdf", data, title="User Guide")

        self.assertEqual(doc["status"], STATUS_COMPLETED)
        self.assertEqual(doc["title"], "User Guide")
        text = Path(doc["text_file"]).read_text(encoding="utf-8")
        self.assertIn("# Chapter 1 Getting Started", text)
        self.assertIn("Install the tool before use.", text)
        self.assertIn("### 1.2 Configuration", text)

    def test_context_wraps_completed_documents_in_banners(self):
        self.kb.add_document("a.txt", b"alpha facts", title="Alpha")
        self.kb.add_document("b.md", b"beta facts", title="Beta")

        context = self.kb.build_context()
        self.assertTrue(context.startswith(KB_BEGIN_BANNER))
        self.assertTrue(context.endswith(KB_END_BANNER))
        self.assertIn("--- Alpha ---\nalpha facts", context)
        self.assertIn("--- Beta ---\nbeta facts", context)

    def test_unreadable_document_is_skipped(self):
        kept = self.kb.add_document("a.txt", b"kept text", title="Kept")
        lost = self.kb.add_document("b.txt", b"lost text", title="Lost")
        Path(lost["text_file"]).unlink()

        context = self.kb.build_context()
        self.assertIn("kept text", context)
        self.assertNotIn("Lost", context)
        self.assertEqual(self.kb.get_document(kept["doc_id"])["status"], STATUS_COMPLETED)

    def test_augment_prompt_modes(self):
        question = "How do I deploy?"
        self.assertEqual(self.kb.augment_prompt(question), question)

        self.kb.add_document("ops.txt", b"Run make deploy.", title="Ops")
        full = self.kb.augment_prompt(question, mode="full")
        self.assertTrue(full.startswith(KB_FULL_INSTRUCTION))
        self.assertIn("--- Ops ---\nRun make deploy.", full)
        self.assertTrue(full.endswith(f"Question:\n{question}"))

        short = self.kb.augment_prompt(question, mode="instruction")
        self.assertIn(str(self.kb.storage_dir), short)
        self.assertNotIn("Run make deploy.", short)
        self.assertTrue(short.endswith(f"\n\n{question}"))

    def test_delete_removes_files_and_row(self):
        doc = self.kb.add_document("a.txt", b"text")
        self.assertTrue(self.kb.delete_document(doc["doc_id"]))
        self.assertIsNone(self.kb.get_document(doc["doc_id"]))
        self.assertFalse(Path(doc["stored_file"]).exists())
        self.assertFalse(Path(doc["text_file"]).exists())
        self.assertFalse(self.kb.delete_document(doc["doc_id"]))


class TestLocalFileStorageProvider(unittest.TestCase):
    def test_names_are_reduced_to_basename(self):
        with tempfile.TemporaryDirectory() as td:
            storage = LocalFileStorageProvider(Path(td) / "store")
            saved = storage.save_bytes(b"x", "../../escape.txt")
            self.assertEqual(saved.parent, storage.root)
            with self.assertRaises(ValueError):
                storage.save_text("x", "..")
            self.assertFalse(storage.delete(Path(td) / "outside.txt"))
            self.assertTrue(storage.delete(saved))


class TestHeadingHeuristic(unittest.TestCase):
    def test_heading_levels(self):
        cases = {
            "Chapter 3 Results": 1,
            "第一章 概述": 1,
            "第二节 方法": 2,
            "1 Introduction": 2,
            "1.2 Scope": 3,
            "1.2.3 Detail": 4,
            "1.2.3.4 Deeper": 4,
            "INTRODUCTION": 2,
        }
        for line, level in cases.items():
            with self.subTest(line=line):
                self.assertEqual(detect_heading_level(line), level)

    def test_body_lines_are_not_headings(self):
        for line in [
            "This is a sentence.",
            "Introduction ........ 3",
            "3 12",
            "# already markdown",
            "A",
            "x" * 81,
            "2024 was a good year",
        ]:
            with self.subTest(line=line):
                self.assertIsNone(detect_heading_level(line))

    def test_text_to_markdown_spacing(self):
        text = "INTRO\nbody line.\n\n\n\nmore body."
        self.assertEqual(text_to_markdown(text), "## INTRO\n\nbody line.\n\nmore body.\n")
        self.assertEqual(text_to_markdown(""), "")

    def test_pdf_to_markdown_reads_every_page(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "two.pdf"
            doc = fitz.open()
            for text in ("First page words.", "Second page words."):
                page = doc.new_page()
                page.insert_text((72, 72), text)
            doc.save(str(path))
            doc.close()

            markdown = pdf_to_markdown(path)
            self.assertLess(markdown.index("First page words."), markdown.index("Second page words."))


if __name__ == "__main__":
    unittest.main()
