from typing import List

from voice_navigator.dom import PageNode

HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
READABLE_TAGS = HEADING_TAGS | {"p", "li", "blockquote", "td", "th", "figcaption", "dd", "dt", "a", "button"}
SUMMARY_TAGS = {"h1", "h2", "h3", "p"}


def _spoken_name(node: PageNode) -> str:
    text = node.text_content().strip()
    if text:
        return text
    for name in ("aria-label", "title", "alt"):
        value = node.get(name).strip()
        if value:
            return value
    for child in node.iter():
        if child is not node and child.get("alt").strip():
            return child.get("alt").strip()
    return ""


def extract_text(node: PageNode) -> str:
    """Spoken form of a node; blank when it has nothing to say."""
    if node.tag in {"a", "button"} or node.tag in HEADING_TAGS:
        name = _spoken_name(node)
        if not name:
            return ""
        if node.tag == "a":
            return f"Link: {name}"
        if node.tag == "button":
            return f"Button: {name}"
        return f"Heading {node.tag[1]}: {name}"
    direct = node.direct_text()
    if direct:
        return direct
    return node.text_content().strip()


def _contains_readable(node: PageNode) -> bool:
    return any(child.tag in READABLE_TAGS for child in node.iter() if child is not node)


def collect_readable(root: PageNode) -> List[PageNode]:
    picked: List[PageNode] = []
    for node in root.iter():
        if node.tag not in READABLE_TAGS:
            continue
        if node.tag not in HEADING_TAGS and node.tag not in {"a", "button"}:
            # Nested readable nodes are read on their own.
            if not node.direct_text() and _contains_readable(node):
                continue
        if not extract_text(node):
            continue
        picked.append(node)
    return picked


def collect_headings(root: PageNode) -> List[PageNode]:
    return root.select(lambda node: node.tag in HEADING_TAGS and bool(extract_text(node)))


def collect_links(root: PageNode) -> List[PageNode]:
    return root.select(lambda node: node.tag == "a" and bool(extract_text(node)))


def summary_source(root: PageNode, limit: int) -> str:
    headings = [node.label() for node in root.iter() if node.tag in HEADING_TAGS & SUMMARY_TAGS]
    paragraphs = [node.label() for node in root.iter() if node.tag == "p"]
    return "\n".join(part for part in headings + paragraphs if part)[:limit]
