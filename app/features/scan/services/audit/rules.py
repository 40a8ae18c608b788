"""
Rule catalog for the page auditor.

Each rule is a small class with fixed WCAG metadata and a check() that looks
at one candidate element at a time. RULES is the static registry the auditor
runs, in order.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from app.features.scan.services.audit.contrast import element_contrast, required_ratio
from app.features.scan.services.audit.dom_snapshot import DomElement, DomSnapshot
from app.platform.exceptions import AuditError
from app.platform.logger import get_logger

logger = get_logger(__name__)

QUICK_WIN_EFFORTS = {"trivial", "easy"}

NATIVE_INTERACTIVE_TAGS = {"button", "input", "select", "textarea", "summary"}
UNLABELLED_INPUT_TYPES = {"hidden", "submit", "reset", "button", "image"}
CONTRAST_TAGS = {
    "p", "span", "div", "a", "button", "h1", "h2", "h3", "h4", "h5", "h6", "li", "td", "th", "label",
}
HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")


@dataclass
class ViolationRecord:
    wcag_criterion: str
    severity: str
    element_type: str
    element_selector: str
    element_snippet: str
    page_url: str
    user_impact: str
    business_impact: str
    legal_risk: str
    fix_description: str
    fix_snippet: str
    fix_effort: str
    estimated_fix_effort: str

    @property
    def quick_win(self) -> bool:
        return self.fix_effort in QUICK_WIN_EFFORTS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["quick_win"] = self.quick_win
        return data


def _has_text(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def accessible_name(element: DomElement, snapshot: DomSnapshot) -> str:
    """Rough accessible name: aria-label, aria-labelledby, text, img alt, title."""
    if _has_text(element.attr("aria-label")):
        return element.attr("aria-label").strip()

    labelledby = element.attr("aria-labelledby")
    if _has_text(labelledby):
        parts = []
        for ref in labelledby.split():
            target = snapshot.find_by_id(ref)
            if target is not None:
                parts.append(snapshot.text_content(target))
        if any(parts):
            return " ".join(p for p in parts if p)

    text = snapshot.text_content(element)
    if text:
        return text

    for descendant in snapshot.descendants(element):
        if descendant.tag == "img" and _has_text(descendant.attr("alt")):
            return descendant.attr("alt").strip()

    if _has_text(element.attr("title")):
        return element.attr("title").strip()
    return ""


class AuditRule:
    """Base rule. Subclasses set the metadata and implement candidates()/check()."""

    name = "rule"
    criterion = ""
    severity = "moderate"
    legal_risk = "low"
    element_type = "element"
    user_impact = ""
    business_impact = ""
    fix_description = ""
    fix_effort = "easy"
    estimated_fix_effort = "30 minutes"

    def candidates(self, snapshot: DomSnapshot) -> Iterable[DomElement]:
        return []

    def check(self, element: DomElement, snapshot: DomSnapshot) -> Optional[Dict[str, str]]:
        """None when the element passes, otherwise field overrides for the violation."""
        return None

    def fix_snippet(self, element: DomElement) -> str:
        return ""

    def evaluate(self, snapshot: DomSnapshot) -> List[ViolationRecord]:
        violations = []
        for element in self.candidates(snapshot):
            try:
                finding = self.check(element, snapshot)
            except Exception as e:
                error = AuditError(f"Rule {self.name} failed on <{element.tag}>: {e}", rule=self.name)
                logger.warning(f"{error.message} ({snapshot.url})")
                continue
            if finding is not None:
                violations.append(self.violation(element, snapshot, **finding))
        return violations

    def violation(self, element: DomElement, snapshot: DomSnapshot, **overrides) -> ViolationRecord:
        fields = {
            "wcag_criterion": self.criterion,
            "severity": self.severity,
            "element_type": self.element_type,
            "element_selector": snapshot.css_selector(element),
            "element_snippet": element.snippet,
            "page_url": snapshot.url,
            "user_impact": self.user_impact,
            "business_impact": self.business_impact,
            "legal_risk": self.legal_risk,
            "fix_description": self.fix_description,
            "fix_snippet": self.fix_snippet(element),
            "fix_effort": self.fix_effort,
            "estimated_fix_effort": self.estimated_fix_effort,
        }
        fields.update(overrides)
        return ViolationRecord(**fields)


class ImageAltRule(AuditRule):
    name = "image-alt"
    criterion = "1.1.1"
    severity = "critical"
    legal_risk = "high"
    element_type = "image"
    user_impact = "Screen reader users cannot access image information"
    business_impact = "Product and content images are invisible to blind customers"
    fix_description = "Provide a text alternative (alt or accessible name)."
    fix_effort = "trivial"
    estimated_fix_effort = "2 minutes"

    def candidates(self, snapshot):
        return [
            e for e in snapshot.visible_elements()
            if e.tag in ("img", "svg") or e.attr("role") == "img"
        ]

    def check(self, element, snapshot):
        if element.attr("role") in ("presentation", "none"):
            return None
        # alt="" marks a decorative image; a missing alt does not
        if element.tag == "img" and element.has_attr("alt"):
            return None
        if _has_text(element.attr("aria-label")) or _has_text(element.attr("aria-labelledby")):
            return None
        if element.tag == "svg" and any(d.tag == "title" for d in snapshot.descendants(element)):
            return None
        return {}

    def fix_snippet(self, element):
        if element.tag == "img":
            src = element.attr("src", "")
            return f'<img src="{src}" alt="[Describe image]">'
        return "<svg role=\"img\"><title>[Describe graphic]</title>...</svg>"


class FormLabelRule(AuditRule):
    name = "form-label"
    criterion = "3.3.2"
    severity = "serious"
    legal_risk = "high"
    element_type = "form"
    user_impact = "Users cannot determine purpose of the input field"
    business_impact = "Reduced form completion rates, legal compliance risk"
    fix_description = "Associate a visible label or aria-label/aria-labelledby."
    fix_effort = "easy"
    estimated_fix_effort = "5 minutes"

    def candidates(self, snapshot):
        return [
            e for e in snapshot.visible_elements("input", "select", "textarea")
            if (e.attr("type") or "text").lower() not in UNLABELLED_INPUT_TYPES
        ]

    def check(self, element, snapshot):
        element_id = element.attr("id")
        if element_id and any(
            label.attr("for") == element_id for label in snapshot.find_all("label")
        ):
            return None
        if any(a.tag == "label" for a in snapshot.ancestors(element)):
            return None
        if _has_text(element.attr("aria-label")) or _has_text(element.attr("aria-labelledby")):
            return None
        return {}

    def fix_snippet(self, element):
        element_id = element.attr("id")
        if element_id:
            return f'<label for="{element_id}">[Label text]</label>'
        return f'<label>[Label text] <{element.tag} ...></label>'


class KeyboardAccessRule(AuditRule):
    name = "keyboard-access"
    criterion = "2.1.1"
    severity = "critical"
    legal_risk = "high"
    element_type = "interactive"
    user_impact = "Keyboard-only users cannot activate this control"
    business_impact = "Users with motor disabilities excluded from key functionality"
    fix_description = 'Use a <button> or add tabindex="0" and Enter/Space key handlers.'
    fix_effort = "easy"
    estimated_fix_effort = "10 minutes"

    def candidates(self, snapshot):
        return [
            e for e in snapshot.visible_elements()
            if e.attr("role") == "button" or "button" in e.classes or e.has_attr("onclick")
        ]

    def check(self, element, snapshot):
        if element.tag in NATIVE_INTERACTIVE_TAGS or (element.tag == "a" and element.has_attr("href")):
            return None
        focusable = element.has_attr("tabindex") and _parse_tabindex(element) >= 0
        has_key_handlers = any(
            element.has_attr(handler) for handler in ("onkeydown", "onkeypress", "onkeyup")
        )
        if focusable and has_key_handlers:
            return None
        return {}

    def fix_snippet(self, element):
        return f"<button>{element.text or 'Action'}</button>"


class ButtonNameRule(AuditRule):
    name = "button-name"
    criterion = "4.1.2"
    severity = "critical"
    legal_risk = "high"
    element_type = "button"
    user_impact = "Screen reader users don't know button purpose"
    business_impact = "Critical actions inaccessible to screen reader users"
    fix_description = "Add accessible name to button"
    fix_effort = "easy"
    estimated_fix_effort = "3 minutes"

    def candidates(self, snapshot):
        return snapshot.visible_elements("button")

    def check(self, element, snapshot):
        return None if accessible_name(element, snapshot) else {}

    def fix_snippet(self, element):
        return '<button aria-label="[Describe button action]">...</button>'


class LinkNameRule(AuditRule):
    name = "link-name"
    criterion = "2.4.4"
    severity = "serious"
    legal_risk = "medium"
    element_type = "link"
    user_impact = "Screen reader users don't know link destination"
    business_impact = "Navigation inaccessible, users cannot complete user journeys"
    fix_description = "Add descriptive text to link"
    fix_effort = "easy"
    estimated_fix_effort = "3 minutes"

    def candidates(self, snapshot):
        return [e for e in snapshot.visible_elements("a") if e.has_attr("href")]

    def check(self, element, snapshot):
        return None if accessible_name(element, snapshot) else {}

    def fix_snippet(self, element):
        return f'<a href="{element.attr("href", "")}">[Descriptive link text]</a>'


class ColorContrastRule(AuditRule):
    name = "color-contrast"
    criterion = "1.4.3"
    severity = "serious"
    legal_risk = "high"
    element_type = "text"
    business_impact = "Content inaccessible to users with low vision, colorblindness"
    fix_effort = "easy"
    estimated_fix_effort = "15 minutes"

    def candidates(self, snapshot):
        # Only elements with their own text, so a container is not blamed for its children
        return [e for e in snapshot.visible_elements(*CONTRAST_TAGS) if e.text]

    def check(self, element, snapshot):
        ratio = element_contrast(element, snapshot)
        if ratio is None:
            return None
        required = required_ratio(element)
        if ratio >= required:
            return None
        required_text = f"{required:g}"
        return {
            "user_impact": f"Insufficient contrast ({ratio:.2f}:1; needs {required_text}:1)",
            "fix_description": f"Increase contrast to at least {required_text}:1",
        }

    def fix_snippet(self, element):
        return "color: #000000; /* dark text */\n/* or */\nbackground-color: #FFFFFF; /* light background */"


class HeadingStartRule(AuditRule):
    name = "heading-start"
    criterion = "1.3.1"
    severity = "moderate"
    legal_risk = "low"
    element_type = "heading"
    user_impact = "Page should start with H1 for proper document structure"
    business_impact = "Screen reader users cannot find the main topic of the page"
    fix_description = "Use H1 for main page heading"
    fix_effort = "easy"
    estimated_fix_effort = "5 minutes"

    def candidates(self, snapshot):
        return snapshot.visible_elements(*HEADING_TAGS)[:1]

    def check(self, element, snapshot):
        return None if element.tag == "h1" else {}

    def fix_snippet(self, element):
        return f"<h1>{element.text}</h1>"


class HeadingOrderRule(AuditRule):
    name = "heading-order"
    criterion = "1.3.1"
    severity = "moderate"
    legal_risk = "medium"
    element_type = "heading"
    user_impact = "Confusing document structure for screen readers"
    business_impact = "Long pages become hard to navigate by heading"
    fix_effort = "easy"
    estimated_fix_effort = "5 minutes"

    def evaluate(self, snapshot):
        violations = []
        last_level = 0
        for heading in snapshot.visible_elements(*HEADING_TAGS):
            level = int(heading.tag[1])
            if last_level and level > last_level + 1:
                violations.append(self.violation(
                    heading,
                    snapshot,
                    fix_description=f"Heading jumps from H{last_level} to H{level}",
                    fix_snippet=f"Use H{last_level + 1} instead of H{level}",
                ))
            last_level = level
        return violations


class PositiveTabindexRule(AuditRule):
    name = "tabindex"
    criterion = "2.4.3"
    severity = "moderate"
    legal_risk = "medium"
    element_type = "interactive"
    user_impact = "Confusing tab order for keyboard users"
    business_impact = "Keyboard users lose their place in forms and menus"
    fix_description = "Remove positive tabindex values"
    fix_effort = "easy"
    estimated_fix_effort = "2 minutes"

    def candidates(self, snapshot):
        return [e for e in snapshot.visible_elements() if e.has_attr("tabindex")]

    def check(self, element, snapshot):
        return {} if _parse_tabindex(element) > 0 else None

    def fix_snippet(self, element):
        return "Remove tabindex attribute or set to 0"


def _parse_tabindex(element: DomElement) -> int:
    raw = (element.attr("tabindex") or "").strip()
    try:
        return int(raw)
    except ValueError:
        raise AuditError(f"Invalid tabindex {raw!r}")


RULES: List[AuditRule] = [
    ImageAltRule(),
    FormLabelRule(),
    KeyboardAccessRule(),
    ButtonNameRule(),
    LinkNameRule(),
    ColorContrastRule(),
    HeadingStartRule(),
    HeadingOrderRule(),
    PositiveTabindexRule(),
]
