import pytest

from adapterforge.web_text import TRUNCATION_MARKER, html_to_text, normalize_domain, normalize_url, truncate


def test_html_to_text_decodes_entities_and_drops_non_text():
    html = (
        '<div data-tip="a>b">Auth</div>'
        "<p>Use&nbsp;OAuth &mdash; see &#x27;token&#x27; &copy;</p>"
        "<script>x()</script><style>p { color: red }</style><!-- c -->"
        "<noscript>Enable JavaScript</noscript>"
    )
    assert html_to_text(html) == "Auth Use OAuth \u2014 see 'token' \u00a9"


def test_html_to_text_handles_fragments():
    assert html_to_text("Orders <b>v2</b>") == "Orders v2"
    assert html_to_text("") == ""


def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("abcdef", 3) == "abc" + TRUNCATION_MARKER


def test_normalize_url():
    assert normalize_url("HTTPS://Docs.Example.com#top") == "https://docs.example.com/"
    assert normalize_url("https://docs.example.com/a?b=1#c") == "https://docs.example.com/a?b=1"
    assert normalize_url("not a url") == "not a url"


def test_normalize_domain():
    assert normalize_domain(" https://api.example.com:8443/v1 ") == "api.example.com:8443"
    assert normalize_domain("docs.example.com/path") == "docs.example.com"
    with pytest.raises(ValueError):
        normalize_domain("  ")
