"""
Serialized view of a rendered page.

The browser runs SNAPSHOT_SCRIPT once per poll and returns a plain tree of element
records. Locating and parsing chat then happens in Python against DomNode objects,
so both can be exercised with hand-built fixtures instead of a live page.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional

# Nodes beyond this count are dropped; chat lives well within it on real pages.
MAX_SNAPSHOT_NODES = 6000

SNAPSHOT_SCRIPT = """
(maxNodes) => {
  let count = 0;
  const ownText = (el) => Array.from(el.childNodes)
    .filter(n => n.nodeType === Node.TEXT_NODE)
    .map(n => n.textContent)
    .join('')
    .trim()
    .slice(0, 200);

  function walk(el) {
    if (count >= maxNodes) return null;
    count++;
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    const inner = el.innerText || '';
    const node = {
      tag: el.tagName.toLowerCase(),
      className: typeof el.className === 'string' ? el.className : (el.getAttribute('class') || ''),
      ownText: ownText(el),
      text: inner.length <= 400 ? inner : '',
      textLength: inner.length,
      rect: {left: rect.left, top: rect.top, width: rect.width, height: rect.height},
      scrollHeight: el.scrollHeight,
      clientHeight: el.clientHeight,
      overflow: style.overflowY || style.overflow || 'visible',
      visible: el.offsetParent !== null || style.position === 'fixed',
      children: []
    };
    for (const child of el.children) {
      const serialized = walk(child);
      if (serialized) node.children.push(serialized);
    }
    return node;
  }

  return {
    viewport: {width: window.innerWidth, height: window.innerHeight},
    root: document.body ? walk(document.body) : null
  };
}
"""

SCROLL_OVERFLOWS = ("auto", "scroll", "overlay")


@dataclass(frozen=True)
class Rect:
    left: float = 0.0
    top: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass(eq=False)
class DomNode:
    tag: str
    class_name: str = ""
    own_text: str = ""
    text: str = ""
    text_length: int = 0
    rect: Rect = field(default_factory=Rect)
    scroll_height: int = 0
    client_height: int = 0
    overflow: str = "visible"
    visible: bool = True
    children: List["DomNode"] = field(default_factory=list)
    parent: Optional["DomNode"] = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: dict, parent: Optional["DomNode"] = None) -> "DomNode":
        rect = data.get("rect") or {}
        text = data.get("text") or ""
        node = cls(
            tag=(data.get("tag") or "div").lower(),
            class_name=data.get("className") or "",
            own_text=data.get("ownText") or "",
            text=text,
            text_length=int(data.get("textLength", len(text))),
            rect=Rect(
                left=float(rect.get("left", 0)),
                top=float(rect.get("top", 0)),
                width=float(rect.get("width", 0)),
                height=float(rect.get("height", 0)),
            ),
            scroll_height=int(data.get("scrollHeight", 0)),
            client_height=int(data.get("clientHeight", 0)),
            overflow=(data.get("overflow") or "visible").lower(),
            visible=bool(data.get("visible", True)),
            parent=parent,
        )
        node.children = [cls.from_dict(child, node) for child in data.get("children") or []]
        return node

    def iter_descendants(self) -> Iterator["DomNode"]:
        """Yield every descendant in document order (self excluded)."""
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def iter_ancestors(self) -> Iterator["DomNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def is_inside(self, other: "DomNode") -> bool:
        return any(ancestor is other for ancestor in self.iter_ancestors())

    @property
    def is_scrollable(self) -> bool:
        return self.scroll_height > self.client_height and self.overflow != "visible"

    @property
    def has_scroll_style(self) -> bool:
        return self.overflow in SCROLL_OVERFLOWS


@dataclass
class PageSnapshot:
    viewport_width: float
    viewport_height: float
    root: Optional[DomNode]

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PageSnapshot":
        data = data or {}
        viewport = data.get("viewport") or {}
        root = data.get("root")
        return cls(
            viewport_width=float(viewport.get("width", 0)),
            viewport_height=float(viewport.get("height", 0)),
            root=DomNode.from_dict(root) if root else None,
        )

    def iter_elements(self) -> Iterator[DomNode]:
        if self.root is None:
            return
        yield self.root
        yield from self.root.iter_descendants()
