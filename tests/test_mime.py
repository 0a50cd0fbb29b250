"""
╔══════════════════════════════════════════╗
║  MAILBRIDGE — Test Suite: MIME Parts     ║
╚══════════════════════════════════════════╝

Tests part naming, text-body selection order and
attachment discovery.
"""

import os
import sys
import unittest
from email.message import EmailMessage

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from hands.mime import build_part_tree, find_text_body, list_attachments, parse_message


def _alternative(plain_first=True):
    msg = EmailMessage()
    msg["Subject"] = "Hello"
    msg["From"] = "alice@example.com"
    if plain_first:
        msg.set_content("plain body")
        msg.add_alternative("<p>html body</p>", subtype="html")
    else:
        msg.set_content("<p>html body</p>", subtype="html")
    return msg


class TestTextBody(unittest.TestCase):

    def test_plain_first_alternative_returns_plain(self):
        tree = build_part_tree(parse_message(_alternative().as_bytes()))
        body, is_html = find_text_body(tree)
        self.assertEqual(body.strip(), "plain body")
        self.assertFalse(is_html)

    def test_html_only_message(self):
        tree = build_part_tree(parse_message(_alternative(plain_first=False).as_bytes()))
        body, is_html = find_text_body(tree)
        self.assertIn("<p>html body</p>", body)
        self.assertTrue(is_html)

    def test_first_match_in_preorder_wins(self):
        tree = {"contentType": "multipart/mixed", "parts": [
            {"contentType": "multipart/alternative", "parts": [
                {"contentType": "text/html", "body": "<b>nested</b>"},
            ]},
            {"contentType": "text/plain", "body": "later sibling"},
        ]}
        self.assertEqual(find_text_body(tree), ("<b>nested</b>", True))

    def test_empty_bodies_skipped(self):
        tree = {"contentType": "multipart/mixed", "parts": [
            {"contentType": "text/plain", "body": ""},
            {"contentType": "text/html", "body": "<i>x</i>"},
        ]}
        self.assertEqual(find_text_body(tree), ("<i>x</i>", True))

    def test_no_text_part(self):
        self.assertIsNone(find_text_body({"contentType": "image/png", "size": 10}))


class TestPartTree(unittest.TestCase):

    def test_part_names_and_headers(self):
        msg = _alternative()
        msg.add_attachment(b"data", maintype="application", subtype="octet-stream",
                           filename="blob.bin")
        tree = build_part_tree(parse_message(msg.as_bytes()))

        self.assertEqual(tree["contentType"], "multipart/mixed")
        self.assertEqual(tree["partName"], "")
        self.assertEqual(tree["headers"]["subject"], ["Hello"])
        self.assertEqual([p["partName"] for p in tree["parts"]], ["1", "2"])
        self.assertEqual([p["partName"] for p in tree["parts"][0]["parts"]], ["1.1", "1.2"])
        self.assertEqual(tree["parts"][1]["name"], "blob.bin")
        self.assertEqual(tree["parts"][1]["size"], 4)


class TestAttachments(unittest.TestCase):

    def test_attachments_listed_with_content(self):
        msg = _alternative()
        msg.add_attachment(b"%PDF-1.4", maintype="application", subtype="pdf",
                           filename="report.pdf")
        msg.add_attachment("a,b\n1,2\n", subtype="csv", filename="data.csv")
        attachments = list_attachments(parse_message(msg.as_bytes()))

        self.assertEqual([a["name"] for a in attachments], ["report.pdf", "data.csv"])
        self.assertEqual(attachments[0]["partName"], "2")
        self.assertEqual(attachments[0]["contentType"], "application/pdf")
        self.assertEqual(attachments[0]["content"], b"%PDF-1.4")
        self.assertEqual(attachments[0]["size"], 8)

    def test_message_without_attachments(self):
        self.assertEqual(list_attachments(parse_message(_alternative().as_bytes())), [])


if __name__ == "__main__":
    unittest.main()
