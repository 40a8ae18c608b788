"""
Tests for the page auditor and its rule catalog
"""
from app.features.scan.services.audit.dom_snapshot import DomSnapshot
from app.features.scan.services.audit.page_auditor import PageAuditor, audit
from app.features.scan.services.audit.rules import AuditRule, ImageAltRule
from app.features.scan.services.scoring.scoring_engine import score
from page_payloads import snapshot_from_html

PAGE_URL = "https://example.com/"


def run(html):
    return audit(snapshot_from_html(f"<html><body>{html}</body></html>", PAGE_URL))


def criteria(violations):
    return sorted(v.wcag_criterion for v in violations)


class TestAuditExample:

    def test_missing_alt_and_low_contrast(self):
        violations = run('<img src="a.png"><p style="color:#aaa">Low contrast</p>')

        assert criteria(violations) == ["1.1.1", "1.4.3"]
        image, text = sorted(violations, key=lambda v: v.wcag_criterion)
        assert image.severity == "critical"
        assert image.legal_risk == "high"
        assert image.element_selector == "html > body > img:nth-of-type(1)"
        assert image.page_url == PAGE_URL
        assert 'alt="[Describe image]"' in image.fix_snippet
        assert text.severity == "serious"
        assert "2.32:1" in text.user_impact
        assert score(violations).wcag_score == 77

    def test_clean_page(self):
        html = (
            "<h1>Shop</h1>"
            '<img src="logo.png" alt="Acme logo">'
            '<label for="email">Email</label><input id="email" type="email">'
            '<button>Subscribe</button>'
            '<a href="/about">About us</a>'
        )
        assert run(html) == []


class TestRules:

    def test_decorative_and_labelled_images_pass(self):
        html = (
            '<img src="d.png" alt="">'
            '<img src="p.png" role="presentation">'
            '<img src="l.png" aria-label="Chart">'
            "<svg><title>Logo</title></svg>"
        )
        assert run(html) == []

    def test_unlabelled_svg_graphic(self):
        assert criteria(run('<div role="img"></div>')) == ["1.1.1"]

    def test_form_labels(self):
        html = (
            '<input type="text" name="q">'
            "<label>Name <input name=\"name\"></label>"
            '<input type="hidden" name="token">'
            '<input type="submit" value="Go">'
            '<textarea aria-label="Message"></textarea>'
        )
        violations = run(html)
        assert criteria(violations) == ["3.3.2"]
        assert 'name="q"' in violations[0].element_snippet

    def test_keyboard_access(self):
        html = (
            '<div role="button" onclick="go()">Go</div>'
            '<div role="button" tabindex="0" onkeydown="go()">Ok</div>'
            '<button class="button" onclick="go()">Native</button>'
        )
        violations = run(html)
        assert criteria(violations) == ["2.1.1"]
        assert violations[0].fix_snippet == "<button>Go</button>"

    def test_button_and_link_names(self):
        html = (
            "<button></button>"
            '<button aria-label="Close"></button>'
            '<button><img src="s.png" alt="Search"></button>'
            '<a href="/x"></a>'
            '<a href="/y" title="Home"></a>'
            "<a>not a link</a>"
        )
        assert criteria(run(html)) == ["2.4.4", "4.1.2"]

    def test_heading_structure(self):
        violations = run("<h2>Intro</h2><h4>Detail</h4><h3>Back</h3>")
        assert criteria(violations) == ["1.3.1", "1.3.1"]
        assert {v.element_type for v in violations} == {"heading"}
        assert any("H2 to H4" in v.fix_description for v in violations)

    def test_large_text_uses_lower_threshold(self):
        assert run('<h1 style="color:#888">Big</h1>') == []
        assert criteria(run('<p style="color:#888">Small</p>')) == ["1.4.3"]

    def test_positive_tabindex(self):
        assert criteria(run('<span tabindex="3">Skip</span><span tabindex="0">Ok</span>')) == ["2.4.3"]


class TestVisibility:

    def test_hidden_elements_never_flagged(self):
        html = (
            '<div style="display:none"><img src="x.png"><p style="color:#aaa">gone</p></div>'
            '<img src="y.png" aria-hidden="true">'
            '<p hidden style="color:#aaa">hidden</p>'
            '<p style="visibility:hidden; color:#aaa">invisible</p>'
            "<script>var a = 1;</script>"
        )
        assert run(html) == []

    def test_zero_sized_rendered_element_is_hidden(self):
        payload = {
            "url": PAGE_URL,
            "elements": [
                {"tag": "body", "parent": None, "rect": {"width": 800, "height": 600}},
                {"tag": "img", "parent": 0, "attributes": {"src": "pixel.gif"}, "rect": {"width": 0, "height": 0}},
                {"tag": "img", "parent": 0, "attributes": {"src": "hero.jpg"}, "rect": {"width": 400, "height": 300}},
            ],
        }
        violations = audit(DomSnapshot.from_payload(payload))
        assert len(violations) == 1
        assert "hero.jpg" in violations[0].fix_snippet


class ExplodingRule(AuditRule):
    name = "exploding"

    def candidates(self, snapshot):
        raise RuntimeError("boom")


class TestIsolation:

    def test_failing_rule_does_not_stop_others(self):
        auditor = PageAuditor(rules=[ExplodingRule(), ImageAltRule()])
        snapshot = snapshot_from_html('<img src="a.png">', PAGE_URL)

        violations = auditor.audit(snapshot)

        assert criteria(violations) == ["1.1.1"]

    def test_bad_element_is_skipped(self):
        violations = run('<span tabindex="abc">Odd</span><span tabindex="5">Jump</span>')

        assert criteria(violations) == ["2.4.3"]
        assert "Jump" in violations[0].element_snippet

    def test_quick_win_flag(self):
        violation = run('<img src="a.png">')[0]
        assert violation.quick_win is True
        assert violation.to_dict()["quick_win"] is True
