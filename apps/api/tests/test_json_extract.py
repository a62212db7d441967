#!/usr/bin/env python3

from __future__ import annotations

import unittest

from packages.lobby_core.llm.json_extract import (
    EvaluationParseError,
    extract_json_span,
    iter_balanced_spans,
    parse_json_payload,
)


class JsonExtractTests(unittest.TestCase):
    def test_fenced_object_is_extracted(self) -> None:
        text = 'Sure thing!\n```json\n{"memorable": true, "importance": 7}\n```\nHope that helps.'
        self.assertEqual(parse_json_payload(text), {"memorable": True, "importance": 7})

    def test_array_with_leading_prose(self) -> None:
        text = 'Here you go: [{"index": 1, "verdict": "KEEP"}, {"index": 2, "verdict": "FORGET"}] done'
        payload = parse_json_payload(text, expect="array")
        self.assertEqual([item["verdict"] for item in payload], ["KEEP", "FORGET"])

    def test_braces_inside_strings_do_not_end_span(self) -> None:
        text = 'noise {"summary": "she said } and ] then left", "ok": true} trailing'
        self.assertEqual(
            extract_json_span(text),
            '{"summary": "she said } and ] then left", "ok": true}',
        )
        self.assertTrue(parse_json_payload(text)["ok"])

    def test_escaped_quote_inside_string(self) -> None:
        text = '{"summary": "a \\"quoted\\" {word}", "memorable": false}'
        self.assertFalse(parse_json_payload(text)["memorable"])

    def test_expecting_array_skips_leading_object(self) -> None:
        text = '{"note": "ignore me"} then [{"index": 1, "verdict": "FADE"}]'
        self.assertEqual(parse_json_payload(text, expect="array")[0]["verdict"], "FADE")

    def test_truncated_response_has_no_span(self) -> None:
        with self.assertRaises(EvaluationParseError) as ctx:
            parse_json_payload('[{"index": 1, "verdict": "KEEP"}, {"index": 2, "verd')
        self.assertEqual(ctx.exception.error_code, "no_json_span")

    def test_empty_response(self) -> None:
        with self.assertRaises(EvaluationParseError) as ctx:
            parse_json_payload("   ")
        self.assertEqual(ctx.exception.error_code, "empty_response")

    def test_balanced_but_invalid_json(self) -> None:
        with self.assertRaises(EvaluationParseError) as ctx:
            parse_json_payload("{memorable: yes}")
        self.assertEqual(ctx.exception.error_code, "invalid_json")

    def test_wrong_shape(self) -> None:
        with self.assertRaises(EvaluationParseError) as ctx:
            parse_json_payload('{"index": 1}', expect="array")
        self.assertEqual(ctx.exception.error_code, "unexpected_shape")

    def test_mismatched_closer_is_skipped(self) -> None:
        spans = list(iter_balanced_spans('{"a": [1, 2} {"b": 2}'))
        self.assertEqual(spans, ['{"b": 2}'])


if __name__ == "__main__":
    unittest.main()
