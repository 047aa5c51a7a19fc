"""Tests for sysmon_json.adapters module."""

import codecs
import json

import pytest

from sysmon_json import adapters
from sysmon_json.adapters import (
    DEFAULT_CODEC,
    parse,
    parse_json,
    parse_xml,
    preprocess,
    serialize,
    serialize_json,
    serialize_xml,
)
from sysmon_json.errors import ParseError, SerializeError
from sysmon_json.models import Document, DocumentFormat, Element, Text


class TestRoundTrip:
    """Round trips through both formats."""

    @pytest.mark.parametrize("fmt", list(DocumentFormat))
    def test_round_trip(self, sample_document, fmt):
        assert parse(serialize(sample_document, fmt), fmt) == sample_document

    def test_xml_json_xml_chain(self, sample_document):
        xml_bytes = serialize_xml(sample_document)
        as_json = serialize_json(parse_xml(xml_bytes))
        back = parse_xml(serialize_xml(parse_json(as_json)))
        assert back == sample_document

    @pytest.mark.parametrize("fmt", list(DocumentFormat))
    def test_mixed_content_round_trip(self, fmt):
        document = Document(Element("a", {}, [
            Text("lead "),
            Element("b", {"k": "v"}),
            Text(" tail"),
            Element("c", {}, [Element("d")]),
        ]))
        assert parse(serialize(document, fmt), fmt) == document

    @pytest.mark.parametrize("fmt", list(DocumentFormat))
    def test_special_characters_round_trip(self, fmt):
        document = Document(Element("Rule", {"name": 'a "quoted" <name> & more'}, [
            Text("C:\\Windows\\Temp\\<x> & ü"),
        ]))
        assert parse(serialize(document, fmt), fmt) == document


class TestXml:
    """Tests for the XML adapter."""

    def test_whitespace_and_comments_dropped(self):
        data = b"""<?xml version="1.0"?>
<Sysmon schemaversion="4.90">
  <!-- a comment -->
  <HashAlgorithms>md5</HashAlgorithms>
</Sysmon>
"""
        document = parse_xml(data)
        assert document.root == Element("Sysmon", {"schemaversion": "4.90"}, [
            Element("HashAlgorithms", {}, [Text("md5")]),
        ])

    def test_serialize_is_indented_with_declaration(self, sample_document):
        output = serialize_xml(sample_document)
        assert output.startswith(b'<?xml version="1.0" encoding="UTF-8"?>\n<Sysmon')
        assert b"\n  <HashAlgorithms>md5,sha256</HashAlgorithms>" in output
        assert b"\n      <ProcessCreate" in output
        assert output.endswith(b"</Sysmon>\n")

    def test_malformed_xml_raises(self):
        with pytest.raises(ParseError, match="Malformed XML"):
            parse_xml(b"<Sysmon><EventFiltering></Sysmon>")

    def test_non_string_attribute_raises(self):
        document = Document(Element("a", {"x": 1}))
        with pytest.raises(SerializeError):
            serialize_xml(document)

    @pytest.mark.parametrize("element, message", [
        (Element("has space"), "'has space' is not a valid XML element name"),
        (Element("1x"), "'1x' is not a valid XML element name"),
        (Element("a", {"1x": "v"}), "'1x' is not a valid XML attribute name"),
        (Element("a", {"b c": "v"}), "'b c' is not a valid XML attribute name"),
    ])
    def test_invalid_names_raise(self, element, message):
        with pytest.raises(SerializeError, match=message):
            serialize_xml(Document(element))

    def test_forbidden_text_character_raises_with_path(self):
        document = Document(Element("Sysmon", {}, [Element("A", {}, [Text("x\u0001y")])]))
        with pytest.raises(SerializeError, match=r"Sysmon/A/text\(\): character U\+0001"):
            serialize_xml(document)

    def test_forbidden_attribute_character_raises_with_path(self):
        document = Document(Element("Sysmon", {}, [
            Element("Rule", {"name": "a"}),
            Element("Rule", {"name": "b\x0bc"}),
        ]))
        with pytest.raises(SerializeError, match=r'Sysmon/Rule\[2\]/attribute "name": character U\+000B'):
            serialize_xml(document)

    def test_allowed_names_and_characters(self):
        document = Document(Element("Rule-1.x", {"_id": "ü-€ ok"}, [
            Element("{urn:example}Item"),
        ]))
        assert parse_xml(serialize_xml(document)) == document

    def test_deeply_nested_input_raises_parse_error(self):
        depth = 5000
        data = b"<a>" * depth + b"</a>" * depth
        with pytest.raises(ParseError, match="nested too deeply"):
            parse_xml(data)


class TestJson:
    """Tests for the JSON adapter."""

    def test_shape(self):
        document = Document(Element("Sysmon", {"schemaversion": "4.90"}, [
            Element("HashAlgorithms", {}, [Text("md5")]),
            Element("EventFiltering"),
        ]))
        payload = json.loads(serialize_json(document))
        assert payload == {
            "name": "Sysmon",
            "attributes": {"schemaversion": "4.90"},
            "children": [
                {"name": "HashAlgorithms", "children": ["md5"]},
                {"name": "EventFiltering"},
            ],
        }

    def test_blank_strings_dropped_and_adjacent_text_joined(self):
        data = json.dumps({"name": "a", "children": ["x", "  ", "y"]}).encode()
        assert parse_json(data).root == Element("a", {}, [Text("xy")])

    @pytest.mark.parametrize("payload, message", [
        (b"{not json", "Malformed JSON"),
        (b"[1, 2]", "expected an object"),
        (b'{"attributes": {}}', "'name' must be a non-empty string"),
        (b'{"name": ""}', "'name' must be a non-empty string"),
        (b'{"name": "a", "attributes": {"x": 1}}', "attribute 'x' must be a string"),
        (b'{"name": "a", "attributes": []}', "'attributes' must be an object"),
        (b'{"name": "a", "children": {}}', "'children' must be a list"),
        (b'{"name": "a", "extra": 1}', "unexpected keys"),
        (b'{"name": "a", "children": [5]}', "expected an object"),
        (b'{"name": "has space"}', "'has space' is not a valid element name"),
        (b'{"name": "a", "attributes": {"1x": "v"}}', "'1x' is not a valid attribute name"),
    ])
    def test_invalid_json_raises(self, payload, message):
        with pytest.raises(ParseError, match=message):
            parse_json(payload)

    def test_error_names_location(self):
        data = b'{"name": "Sysmon", "children": [{"name": "Rule", "attributes": {"x": 1}}]}'
        with pytest.raises(ParseError, match=r"\$/Sysmon\[0\]/Rule"):
            parse_json(data)

    def test_unserializable_attribute_raises(self):
        document = Document(Element("a", {"x": object()}))
        with pytest.raises(SerializeError):
            serialize_json(document)

    def test_deeply_nested_input_raises_parse_error(self):
        depth = 100000
        data = b"[" * depth + b"]" * depth
        with pytest.raises(ParseError, match="nested too deeply"):
            parse_json(data)

    def test_control_character_text_is_valid_json(self):
        data = json.dumps({"name": "A", "children": ["x\u0001y"]}).encode()
        assert parse_json(data).root == Element("A", {}, [Text("x\u0001y")])


class TestPreprocess:
    """Tests for preprocess function."""

    def test_strips_utf8_bom_and_normalizes_newlines(self):
        data = codecs.BOM_UTF8 + b"<a>\r\n  <b>x</b>   \r\n</a>\r\n"
        assert preprocess(data, DocumentFormat.XML) == b"<a>\n  <b>x</b>\n</a>\n"

    def test_utf16_declaration_rewritten(self):
        data = '<?xml version="1.0" encoding="UTF-16"?>\r\n<a>x</a>'.encode("utf-16")
        result = preprocess(data, DocumentFormat.XML)
        assert result == b'<?xml version="1.0" encoding="UTF-8"?>\n<a>x</a>\n'
        assert parse_xml(result).root == Element("a", {}, [Text("x")])

    def test_latin1_input_decoded(self):
        result = preprocess(b"<a>caf\xe9</a>", DocumentFormat.XML)
        assert parse_xml(result).root.text == "caf\u00e9"

    def test_json_untouched_apart_from_whitespace(self):
        data = b'  {"name": "a"}  \r\n'
        assert preprocess(data, DocumentFormat.JSON) == b'{"name": "a"}\n'


class TestCodec:
    """Tests for the Codec seam."""

    def test_default_codec_uses_module_functions(self):
        assert DEFAULT_CODEC.parse is adapters.parse
        assert DEFAULT_CODEC.serialize is adapters.serialize
