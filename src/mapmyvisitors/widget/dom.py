"""
A minimal headless document model.

Just enough structure for the widget runtime to find its script tag,
build its container and overlays, and for tests to inspect the result.
"""
from __future__ import annotations

from typing import Iterator


class Element:
    """A DOM-like node with attributes, inline style and children."""

    def __init__(self, tag: str, attributes: dict[str, str] | None = None, text: str = ""):
        self.tag = tag.lower()
        self.attributes: dict[str, str] = dict(attributes or {})
        self.style: dict[str, str] = {}
        self.children: list[Element] = []
        self.parent: Element | None = None
        self.text = text
        self.inner_html = ""
        self.client_width = 0

    def __repr__(self) -> str:
        return f"<Element {self.tag} {self.attributes!r}>"

    @property
    def id(self) -> str | None:
        return self.attributes.get("id")

    @id.setter
    def id(self, value: str) -> None:
        self.attributes["id"] = value

    def get_attribute(self, name: str) -> str | None:
        return self.attributes.get(name)

    def set_attribute(self, name: str, value: str) -> None:
        self.attributes[name] = value

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes

    def set_style(self, **declarations: str) -> None:
        """Set inline style properties; underscores become dashes."""
        for name, value in declarations.items():
            self.style[name.replace("_", "-")] = value

    @property
    def css_text(self) -> str:
        return " ".join(f"{name}: {value};" for name, value in self.style.items())

    def append_child(self, child: Element) -> Element:
        if child.parent is not None:
            child.parent.remove_child(child)
        child.parent = self
        self.children.append(child)
        return child

    def remove_child(self, child: Element) -> None:
        self.children.remove(child)
        child.parent = None

    def remove(self) -> None:
        if self.parent is not None:
            self.parent.remove_child(self)

    def clear_children(self) -> None:
        for child in list(self.children):
            self.remove_child(child)

    def iter_descendants(self) -> Iterator[Element]:
        """Depth-first, document order."""
        for child in self.children:
            yield child
            yield from child.iter_descendants()

    def query(self, attribute: str) -> Element | None:
        """First descendant carrying ``attribute``."""
        for node in self.iter_descendants():
            if node.has_attribute(attribute):
                return node
        return None


class Document:
    """Root of a headless page: <html> with <head> and <body>."""

    def __init__(self, with_body: bool = True):
        self.document_element = Element("html")
        self.head = self.document_element.append_child(Element("head"))
        self.body = self.document_element.append_child(Element("body")) if with_body else None
        self.current_script: Element | None = None

    def create_element(self, tag: str) -> Element:
        return Element(tag)

    def get_element_by_id(self, element_id: str) -> Element | None:
        for node in self.document_element.iter_descendants():
            if node.id == element_id:
                return node
        return None

    def get_elements_by_tag_name(self, tag: str) -> list[Element]:
        tag = tag.lower()
        return [node for node in self.document_element.iter_descendants() if node.tag == tag]
