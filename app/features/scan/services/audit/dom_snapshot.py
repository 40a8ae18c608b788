"""
Flat, read-only model of a rendered page.

A DomSnapshot is a list of DomElement in document order. Each element knows
its parent index, its own attributes and direct text, the handful of computed
style properties the rules need, and its rendered size when one is known.

DomSnapshot.from_payload builds one from the JSON the browser session extracts
with getComputedStyle and getBoundingClientRect.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

SNIPPET_LENGTH = 200

# Elements that are never rendered as page content
NON_RENDERED_TAGS = {
    "head", "script", "style", "title", "meta", "link", "template", "noscript", "base",
}

DEFAULT_STYLE = {
    "color": "rgb(0, 0, 0)",
    "background-color": "rgba(0, 0, 0, 0)",
    "font-size": "16px",
    "font-weight": "400",
    "display": "inline",
    "visibility": "visible",
}


@dataclass
class DomElement:
    index: int
    tag: str
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    parent: Optional[int] = None
    style: Dict[str, str] = field(default_factory=dict)
    # (width, height) in CSS pixels; None when layout is unknown
    size: Optional[Tuple[float, float]] = None
    nth_of_type: int = 1
    outer_html: str = ""
    children: List[int] = field(default_factory=list)

    def attr(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attributes.get(name, default)

    def has_attr(self, name: str) -> bool:
        return name in self.attributes

    @property
    def classes(self) -> List[str]:
        return (self.attributes.get("class") or "").split()

    @property
    def snippet(self) -> str:
        html = " ".join(self.outer_html.split())
        if len(html) > SNIPPET_LENGTH:
            return html[: SNIPPET_LENGTH - 3] + "..."
        return html


@dataclass
class DomSnapshot:
    url: str
    elements: List[DomElement]
    title: str = ""

    def __post_init__(self):
        self._hidden_cache: Dict[int, bool] = {}
        for element in self.elements:
            element.children = []
        for element in self.elements:
            if element.parent is not None:
                self.elements[element.parent].children.append(element.index)

    def __iter__(self) -> Iterator[DomElement]:
        return iter(self.elements)

    def __len__(self) -> int:
        return len(self.elements)

    def parent_of(self, element: DomElement) -> Optional[DomElement]:
        if element.parent is None:
            return None
        return self.elements[element.parent]

    def ancestors(self, element: DomElement) -> Iterator[DomElement]:
        parent = self.parent_of(element)
        while parent is not None:
            yield parent
            parent = self.parent_of(parent)

    def descendants(self, element: DomElement) -> Iterator[DomElement]:
        stack = list(reversed(element.children))
        while stack:
            child = self.elements[stack.pop()]
            yield child
            stack.extend(reversed(child.children))

    def find_all(self, *tags: str) -> List[DomElement]:
        wanted = {t.lower() for t in tags}
        return [e for e in self.elements if e.tag in wanted]

    def find_by_id(self, element_id: str) -> Optional[DomElement]:
        for element in self.elements:
            if element.attributes.get("id") == element_id:
                return element
        return None

    def text_content(self, element: DomElement) -> str:
        """Own text plus the text of every visible descendant."""
        parts = [element.text]
        parts.extend(d.text for d in self.descendants(element) if not self.is_hidden(d))
        return " ".join(p for p in parts if p).strip()

    def is_hidden(self, element: DomElement) -> bool:
        cached = self._hidden_cache.get(element.index)
        if cached is None:
            cached = self._compute_hidden(element)
            self._hidden_cache[element.index] = cached
        return cached

    def visible_elements(self, *tags: str) -> List[DomElement]:
        pool: Iterable[DomElement] = self.find_all(*tags) if tags else self.elements
        return [e for e in pool if not self.is_hidden(e)]

    def _compute_hidden(self, element: DomElement) -> bool:
        if element.tag in NON_RENDERED_TAGS:
            return True
        if element.style.get("visibility", "visible") in ("hidden", "collapse"):
            return True
        if element.size is not None and (element.size[0] <= 0 or element.size[1] <= 0):
            return True
        if _hides_subtree(element):
            return True
        parent = self.parent_of(element)
        return parent is not None and self._subtree_hidden(parent)

    def _subtree_hidden(self, element: DomElement) -> bool:
        # Only display:none, aria-hidden and non-rendered containers hide descendants;
        # a zero-sized box can still overflow visible children.
        if element.tag in NON_RENDERED_TAGS or _hides_subtree(element):
            return True
        parent = self.parent_of(element)
        return parent is not None and self._subtree_hidden(parent)

    def css_selector(self, element: DomElement) -> str:
        parts = []
        current: Optional[DomElement] = element
        while current is not None:
            element_id = current.attributes.get("id")
            if element_id and " " not in element_id:
                parts.append(f"{current.tag}#{element_id}")
                break
            if current.tag in ("html", "body"):
                parts.append(current.tag)
            else:
                parts.append(f"{current.tag}:nth-of-type({current.nth_of_type})")
            current = self.parent_of(current)
        return " > ".join(reversed(parts))

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], url: str = "") -> "DomSnapshot":
        """Build from the browser extraction script's result."""
        elements: List[DomElement] = []
        type_counters: Dict[Tuple[Optional[int], str], int] = {}
        for index, raw in enumerate(payload.get("elements") or []):
            tag = (raw.get("tag") or "").lower()
            parent = raw.get("parent")
            key = (parent, tag)
            type_counters[key] = type_counters.get(key, 0) + 1

            rect = raw.get("rect")
            size = None
            if rect:
                size = (float(rect.get("width") or 0), float(rect.get("height") or 0))

            style = dict(DEFAULT_STYLE)
            style.update({k: str(v) for k, v in (raw.get("style") or {}).items() if v is not None})

            elements.append(DomElement(
                index=index,
                tag=tag,
                attributes={k: str(v) for k, v in (raw.get("attributes") or {}).items()},
                text=" ".join((raw.get("text") or "").split()),
                parent=parent,
                style=style,
                size=size,
                nth_of_type=type_counters[key],
                outer_html=raw.get("html") or "",
            ))
        return cls(url=payload.get("url") or url, elements=elements, title=payload.get("title") or "")


def _hides_subtree(element: DomElement) -> bool:
    if element.style.get("display") == "none":
        return True
    return (element.attributes.get("aria-hidden") or "").strip().lower() == "true"
