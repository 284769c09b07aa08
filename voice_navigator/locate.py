from typing import List, Optional

from voice_navigator.dom import PageNode

NAVIGABLE = "navigable"
CLICKABLE = "clickable"


def is_navigable(node: PageNode) -> bool:
    return node.tag == "a"


def is_clickable(node: PageNode) -> bool:
    if node.tag == "button":
        return True
    if node.get("role").strip().lower() == "button":
        return True
    return node.tag == "input" and node.get("type").strip().lower() in {"submit", "button"}


def _navigable_labels(node: PageNode) -> List[str]:
    return [node.label()]


def _clickable_labels(node: PageNode) -> List[str]:
    return [node.label(), node.get("value"), node.get("aria-label")]


_SCOPES = {
    NAVIGABLE: (is_navigable, _navigable_labels),
    CLICKABLE: (is_clickable, _clickable_labels),
}


def find_target(root: PageNode, target_text: Optional[str], role: str) -> Optional[PageNode]:
    if role not in _SCOPES:
        raise ValueError(f"Unknown target role: {role!r}")
    needle = (target_text or "").strip().lower()
    if not needle:
        return None
    in_scope, labels_for = _SCOPES[role]
    for node in root.iter():
        if not in_scope(node):
            continue
        if any(needle in label.lower() for label in labels_for(node) if label):
            return node
    return None


def describe_target(node: PageNode) -> str:
    return node.label() or node.get("value") or node.get("aria-label") or "element"
