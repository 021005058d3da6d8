"""
Streaming XMLTV writer.

All text and attribute values go through one encoder (XMLGenerator plus
removal of characters XML 1.0 cannot carry), so output always parses back
to the values that were written.
"""
import re
from typing import IO, Dict, Optional
from xml.sax.saxutils import XMLGenerator

from services.xmltv_ingest_service import CATEGORY_DELIMITER

_ILLEGAL_XML_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")

GENERATOR_NAME = "epg-aggregator"


def clean_xml_text(value) -> str:
    """Stringify and drop characters that are not allowed in XML 1.0."""
    if value is None:
        return ""
    return _ILLEGAL_XML_CHARS.sub("", str(value))


class XmltvWriter:
    """Writes an XMLTV document element by element to a file-like object"""

    def __init__(self, stream: IO, root_tag: str = "tv", root_attrs: Optional[Dict[str, str]] = None):
        self.root_tag = root_tag
        if root_attrs is None:
            root_attrs = {"generator-info-name": GENERATOR_NAME} if root_tag == "tv" else {}
        self.root_attrs = root_attrs
        self._gen = XMLGenerator(stream, encoding="utf-8", short_empty_elements=True)
        self._depth = 0

    def _attrs(self, attrs: Optional[Dict]) -> Dict[str, str]:
        return {k: clean_xml_text(v) for k, v in (attrs or {}).items() if v is not None}

    def _newline(self) -> None:
        self._gen.ignorableWhitespace("\n" + "  " * self._depth)

    def start_document(self) -> None:
        self._gen.startDocument()
        self._gen.ignorableWhitespace("\n")
        self._gen.startElement(self.root_tag, self._attrs(self.root_attrs))
        self._depth = 1

    def end_document(self) -> None:
        self._depth = 0
        self._newline()
        self._gen.endElement(self.root_tag)
        self._gen.ignorableWhitespace("\n")
        self._gen.endDocument()

    def start_element(self, tag: str, attrs: Optional[Dict] = None) -> None:
        self._newline()
        self._gen.startElement(tag, self._attrs(attrs))
        self._depth += 1

    def end_element(self, tag: str) -> None:
        self._depth -= 1
        self._newline()
        self._gen.endElement(tag)

    def text_element(self, tag: str, text, attrs: Optional[Dict] = None) -> None:
        self._newline()
        self._gen.startElement(tag, self._attrs(attrs))
        self._gen.characters(clean_xml_text(text))
        self._gen.endElement(tag)

    def empty_element(self, tag: str, attrs: Optional[Dict] = None) -> None:
        self._newline()
        self._gen.startElement(tag, self._attrs(attrs))
        self._gen.endElement(tag)

    def write_channel(self, channel_id: str, display_name: str, icon: Optional[str] = None) -> None:
        self.start_element("channel", {"id": channel_id})
        self.text_element("display-name", display_name)
        if icon:
            self.empty_element("icon", {"src": icon})
        self.end_element("channel")

    def write_programme(self, programme: Dict, channel_id: Optional[str] = None) -> None:
        """
        Write one programme.

        Args:
            programme: Dict with start, stop, channel_id, title and the optional
                fields stored on Program rows
            channel_id: Optional - channel attribute to write instead of the stored one
        """
        self.start_element(
            "programme",
            {
                "start": programme["start"],
                "stop": programme["stop"],
                "channel": channel_id or programme["channel_id"],
            },
        )
        self.text_element("title", programme.get("title") or "", {"lang": programme.get("lang")})
        if programme.get("sub_title"):
            self.text_element("sub-title", programme["sub_title"])
        if programme.get("description"):
            self.text_element("desc", programme["description"])
        if programme.get("category"):
            for category in programme["category"].split(CATEGORY_DELIMITER):
                if category.strip():
                    self.text_element("category", category.strip())
        if programme.get("icon"):
            self.empty_element("icon", {"src": programme["icon"]})
        if programme.get("episode_num"):
            self.text_element(
                "episode-num", programme["episode_num"], {"system": programme.get("episode_num_system")}
            )
        if programme.get("rating"):
            self.start_element("rating")
            self.text_element("value", programme["rating"])
            self.end_element("rating")
        self.end_element("programme")
