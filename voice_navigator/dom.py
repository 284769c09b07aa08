from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

REF_ATTRIBUTE = "data-vn-ref"

# Refs survive later snapshots of the same document: stamped elements keep
# their ref and only new elements get one. The per-document prefix keeps a
# handle from a previous page from matching anything after navigation.
SNAPSHOT_SCRIPT = """() => {
    const SKIP = new Set(['script', 'style', 'noscript', 'template', 'svg', 'head']);
    const visible = (el) => {
      if (!(el instanceof HTMLElement)) return true;
      const style = window.getComputedStyle(el);
      if (style.display === 'none' || style.visibility === 'hidden') return false;
      return !el.hidden;
    };
    if (!window.__vnRefPrefix) {
      window.__vnRefPrefix = Math.random().toString(36).slice(2, 8);
      window.__vnNextRef = 1;
    }
    const walk = (el) => {
      const tag = el.tagName.toLowerCase();
      if (SKIP.has(tag) || !visible(el)) return null;
      let ref = el.getAttribute('data-vn-ref');
      if (!ref || !ref.startsWith(window.__vnRefPrefix + '-')) {
        ref = `${window.__vnRefPrefix}-e${window.__vnNextRef++}`;
        el.setAttribute('data-vn-ref', ref);
      }
      const attrs = {};
      for (const name of ['role', 'type', 'value', 'aria-label', 'href', 'title', 'alt']) {
        const value = name === 'value' && 'value' in el ? el.value : el.getAttribute(name);
        if (value !== null && value !== undefined && value !== '') attrs[name] = String(value);
      }
      const children = [];
      for (const child of el.childNodes) {
        if (child.nodeType === Node.TEXT_NODE) {
          if (child.textContent) children.push(child.textContent);
        } else if (child.nodeType === Node.ELEMENT_NODE) {
          const payload = walk(child);
          if (payload) children.push(payload);
        }
      }
      return { tag, ref, attrs, children };
    };
    return walk(document.body || document.documentElement);
}"""


@dataclass(frozen=True)
class NodeHandle:
    """Borrowed reference to a live page element.

    The ref stays valid across snapshots of the same document; ``generation``
    records which snapshot produced the handle.
    """

    ref: str
    generation: int = 0

    def selector(self) -> str:
        return f'[{REF_ATTRIBUTE}="{self.ref}"]'


@dataclass(eq=False)
class PageNode:
    tag: str
    attrs: Dict[str, str] = field(default_factory=dict)
    children: List[Union[str, "PageNode"]] = field(default_factory=list)
    ref: Optional[str] = None
    generation: int = 0

    def get(self, name: str, default: str = "") -> str:
        return self.attrs.get(name, default)

    def elements(self) -> List["PageNode"]:
        return [child for child in self.children if isinstance(child, PageNode)]

    def text_content(self) -> str:
        parts: List[str] = []
        for child in self.children:
            if isinstance(child, PageNode):
                parts.append(child.text_content())
            else:
                parts.append(child)
        return "".join(parts)

    def direct_text(self) -> str:
        fragments = [child.strip() for child in self.children if isinstance(child, str)]
        return " ".join(fragment for fragment in fragments if fragment)

    def label(self) -> str:
        return " ".join(self.text_content().split())

    def iter(self) -> Iterator["PageNode"]:
        yield self
        for child in self.elements():
            yield from child.iter()

    def select(self, predicate: Callable[["PageNode"], bool]) -> List["PageNode"]:
        return [node for node in self.iter() if predicate(node)]

    def handle(self) -> Optional[NodeHandle]:
        if not self.ref:
            return None
        return NodeHandle(self.ref, self.generation)

    def __repr__(self) -> str:
        return f"PageNode({self.tag!r}, ref={self.ref!r}, label={self.label()[:40]!r})"


def build_page_tree(payload: Optional[Mapping[str, Any]], generation: int = 0) -> PageNode:
    if not payload:
        return PageNode("body", generation=generation)
    children: List[Union[str, PageNode]] = []
    for child in payload.get("children") or []:
        if isinstance(child, str):
            children.append(child)
        elif isinstance(child, Mapping):
            children.append(build_page_tree(child, generation))
    return PageNode(
        tag=str(payload.get("tag", "div")).lower(),
        attrs={str(k): str(v) for k, v in (payload.get("attrs") or {}).items()},
        children=children,
        ref=payload.get("ref"),
        generation=generation,
    )


def element(tag: str, *children: Union[str, PageNode], **attrs: str) -> PageNode:
    """Build a node by hand; attribute names use ``_`` for ``-``."""
    return PageNode(
        tag=tag.lower(),
        attrs={name.rstrip("_").replace("_", "-"): value for name, value in attrs.items()},
        children=list(children),
    )
