from slowcrawl.workflows.extract import (
    TYPE_FONT,
    TYPE_IMAGE,
    TYPE_SCRIPT,
    TYPE_STYLESHEET,
    charset_from_content_type,
    css_urls,
    parse,
)

PAGE = b"""<!doctype html>
<html><head>
<title> Hello there </title>
<link rel="stylesheet" href="style.css">
<link rel="icon" href="/favicon.ico">
<meta http-equiv="refresh" content="30; url=/next">
<style>@import "print.css"; body { background: url('bg.png') } @font-face { src: url(f.woff2) }</style>
</head><body>
<a href="/about#team">About</a>
<a href="mailto:x@example.com">Mail</a>
<a href="javascript:void(0)">Nope</a>
<a href="https://other.example/">Other</a>
<img src="a.jpg" srcset="a-2x.jpg 2x, a-3x.jpg 3x">
<img data-src="lazy.jpg">
<div style="background-image: url(tile.gif)"></div>
<script src="/app.js"></script>
</body></html>"""


def test_parse_extracts_links_resources_and_title():
    analysis = parse(PAGE, "http://h/dir/index.html", "text/html; charset=utf-8")
    assert analysis.title == "Hello there"
    assert analysis.has_script is True
    assert analysis.links == ["http://h/next", "http://h/about", "https://other.example/"]
    by_url = {r.url: r.type for r in analysis.resources}
    assert by_url["http://h/dir/style.css"] == TYPE_STYLESHEET
    assert by_url["http://h/favicon.ico"] == TYPE_IMAGE
    assert by_url["http://h/dir/print.css"] == TYPE_STYLESHEET
    assert by_url["http://h/dir/bg.png"] == TYPE_IMAGE
    assert by_url["http://h/dir/f.woff2"] == TYPE_FONT
    assert by_url["http://h/dir/a.jpg"] == TYPE_IMAGE
    assert by_url["http://h/dir/a-2x.jpg"] == TYPE_IMAGE
    assert by_url["http://h/dir/a-3x.jpg"] == TYPE_IMAGE
    assert by_url["http://h/dir/lazy.jpg"] == TYPE_IMAGE
    assert by_url["http://h/dir/tile.gif"] == TYPE_IMAGE
    assert by_url["http://h/app.js"] == TYPE_SCRIPT
    assert all(r.method == "GET" for r in analysis.resources)


def test_base_element_changes_resolution():
    analysis = parse(b'<base href="http://cdn.example/x/"><img src="i.png">', "http://h/")
    assert [r.url for r in analysis.resources] == ["http://cdn.example/x/i.png"]
    assert analysis.has_script is False


def test_duplicates_are_reported_once():
    analysis = parse(b'<a href="/a">1</a><a href="/a#x">2</a><img src="i.png"><img src="i.png">', "http://h/")
    assert analysis.links == ["http://h/a"]
    assert len(analysis.resources) == 1


def test_helpers():
    assert charset_from_content_type("text/html; charset=ISO-8859-1") == "ISO-8859-1"
    assert charset_from_content_type("text/html") is None
    assert css_urls("a { background: url( \"x.png\" ) }") == [("x.png", TYPE_IMAGE)]
