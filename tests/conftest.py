"""Shared test fixtures."""

import logging
import tempfile
from pathlib import Path

import pytest

from sysmon_json.models import Document, Element, Text


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_document():
    """A small Sysmon configuration tree."""
    return Document(Element("Sysmon", {"schemaversion": "4.90"}, [
        Element("HashAlgorithms", {}, [Text("md5,sha256")]),
        Element("EventFiltering", {}, [
            Element("RuleGroup", {"name": "", "groupRelation": "or"}, [
                Element("ProcessCreate", {"onmatch": "include"}, [
                    Element("Image", {"condition": "end with"}, [Text("cmd.exe")]),
                    Element("CommandLine", {"condition": "contains"}, [Text("-enc")]),
                ]),
            ]),
            Element("RuleGroup", {"name": "", "groupRelation": "or"}, [
                Element("NetworkConnect", {"onmatch": "exclude"}, [
                    Element("DestinationPort", {"condition": "is"}, [Text("443")]),
                ]),
            ]),
        ]),
    ]))


@pytest.fixture
def sysmon_xml():
    """Factory for one-rule Sysmon module documents."""
    def build(group="base", image="cmd.exe", onmatch="include", hashes="md5", event="ProcessCreate"):
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<Sysmon schemaversion="4.90">
  <HashAlgorithms>{hashes}</HashAlgorithms>
  <EventFiltering>
    <RuleGroup name="{group}" groupRelation="or">
      <{event} onmatch="{onmatch}">
        <Image condition="end with">{image}</Image>
      </{event}>
    </RuleGroup>
  </EventFiltering>
</Sysmon>
"""
    return build


@pytest.fixture(autouse=True)
def reset_console_logging():
    """Drop console handlers installed by cli runs so they never outlive a test."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_sysmon_json_console", False):
            root.removeHandler(handler)
            handler.close()
