from __future__ import annotations

from ingestion.extraction.dom import extract_dom
from ingestion.extraction.feeds import discover_feed_links, extract_feed, parse_ics
from ingestion.extraction.hydration import extract_hydration, find_events_in_object
from ingestion.extraction.json_ld import extract_json_ld
from ingestion.extraction.json_repair import loads_lenient, slice_balanced
from ingestion.extraction.types import ExtractionContext, Page


BASE = "https://www.example.nl/agenda"


def _ctx(**kwargs) -> ExtractionContext:
    return ExtractionContext(url=BASE, **kwargs)


# --- hydration -------------------------------------------------------------------

NEXT_PAGE = """<html><head>
<script id="__NEXT_DATA__" type="application/json">
{"props": {"pageProps": {"events": [
  {"title": "Jazz in het Park", "startDate": "2026-06-12T20:00:00", "venue": {"name": "Vondelpark"}, "url": "/agenda/jazz"},
  {"title": "Jazz in het Park", "startDate": "2026-06-12T20:00:00"}
]}}}
</script></head><body><div id="__next"></div></body></html>"""


def test_hydration_reads_next_data():
    result = extract_hydration(Page(NEXT_PAGE), _ctx())

    assert result.metadata["payloads"] == ["__NEXT_DATA__"]
    assert len(result.events) == 1
    event = result.events[0]
    assert event.title == "Jazz in het Park"
    assert event.iso_date == "2026-06-12"
    assert event.start_time == "20:00"
    assert event.location == "Vondelpark"
    assert event.detail_url == "https://www.example.nl/agenda/jazz"


def test_hydration_repairs_hand_written_global_state():
    page = Page(
        "<html><body><script>window.__NUXT__={data:[{events:[{name:'Kermis Zwolle',date:'14-09-2026',"
        "location:'Grote Markt'}]}]}</script></body></html>"
    )

    result = extract_hydration(page, _ctx())

    assert [e.title for e in result.events] == ["Kermis Zwolle"]
    assert result.events[0].iso_date == "2026-09-14"
    assert result.events[0].location == "Grote Markt"


def test_hydration_counts_unparseable_payloads():
    page = Page("<html><body><script>window.__INITIAL_STATE__ = {broken: [</script></body></html>")

    result = extract_hydration(page, _ctx())

    assert result.events == []
    assert result.metadata["parse_errors"] == 1
    assert result.metadata["reason"] == "no_state_payload"


def test_find_events_in_object_is_depth_limited():
    nested: dict = {"title": "Diep verstopt", "date": "2026-01-01"}
    for _ in range(15):
        nested = {"child": nested}
    assert find_events_in_object(nested) == []


def test_json_repair_helpers():
    assert loads_lenient("{'a': 1, b: [1, 2,],}") == {"a": 1, "b": [1, 2]}
    assert loads_lenient("{nope") is None
    assert slice_balanced('x = {"a": "}"} trailing', 4) == '{"a": "}"}'
    assert slice_balanced("x = 42", 4) is None


def test_json_repair_leaves_string_contents_alone():
    assert loads_lenient('{events: [{title: "Rock \'n\' Roll Night", date: "2026-07-04"}]}') == {
        "events": [{"title": "Rock 'n' Roll Night", "date": "2026-07-04"}]
    }
    assert loads_lenient("{note: 'zeg \"ja\", x: 1', open: true, size: 1e3,}") == {
        "note": 'zeg "ja", x: 1',
        "open": True,
        "size": 1000.0,
    }


# --- JSON-LD -------------------------------------------------------------------------

JSON_LD_PAGE = """<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@graph": [
  {"@type": "WebPage", "name": "Programma"},
  {"@type": "MusicEvent", "name": "Paradiso Nacht", "startDate": "2026-05-01T23:00",
   "location": {"@type": "Place", "name": "Paradiso",
                "address": {"streetAddress": "Weteringschans 6", "addressLocality": "Amsterdam"}},
   "offers": {"url": "https://tickets.example.nl/paradiso-nacht"}}
]}
</script>
<script type="application/ld+json">
{"@type": "ItemList", "itemListElement": [
  {"@type": "ListItem", "position": 1, "item": {"@type": "Event", "name": "Open dag", "startDate": "2026-04-04"}}
]}
</script>
<script type="application/ld+json">{"@type": "Event", "name": </script>
</head><body></body></html>"""


def test_json_ld_walks_graph_and_item_lists():
    result = extract_json_ld(Page(JSON_LD_PAGE), _ctx())

    assert [e.title for e in result.events] == ["Paradiso Nacht", "Open dag"]
    concert = result.events[0]
    assert concert.iso_date == "2026-05-01"
    assert concert.start_time == "23:00"
    assert concert.category == "music"
    assert concert.location == "Paradiso, Weteringschans 6, Amsterdam"
    assert concert.detail_url == "https://tickets.example.nl/paradiso-nacht"
    assert result.metadata["blocks"] == 3
    assert result.metadata["parse_errors"] == 1


def test_json_ld_without_blocks():
    result = extract_json_ld(Page("<html><body><h1>Agenda</h1></body></html>"), _ctx())
    assert result.success is False
    assert result.metadata["reason"] == "no_json_ld"


# --- feeds ------------------------------------------------------------------------------

ICS = (
    "BEGIN:VCALENDAR\r\n"
    "VERSION:2.0\r\n"
    "BEGIN:VEVENT\r\n"
    "SUMMARY:Koningsdag vrijmarkt\r\n"
    "DTSTART:20260427T090000\r\n"
    "LOCATION:Oudegracht\\, Utrecht\r\n"
    "URL:/agenda/koningsdag\r\n"
    "DESCRIPTION:Vrijmarkt langs de\r\n"
    "  grachten\r\n"
    "CATEGORIES:markt,familie\r\n"
    "END:VEVENT\r\n"
    "BEGIN:VEVENT\r\n"
    "SUMMARY:Uitmarkt\r\n"
    "DTSTART;VALUE=DATE:20260829\r\n"
    "END:VEVENT\r\n"
    "END:VCALENDAR\r\n"
)

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Agenda</title>
<item>
  <title>Lampionnenoptocht</title>
  <link>https://www.example.nl/agenda/lampion</link>
  <pubDate>Sat, 14 Nov 2026 18:00:00 +0000</pubDate>
  <description>&lt;p&gt;Door de binnenstad&lt;/p&gt;</description>
  <category>family</category>
</item>
</channel></rss>"""


def test_parse_ics_unfolds_and_unescapes():
    events = parse_ics(ICS, BASE)

    assert [e.title for e in events] == ["Koningsdag vrijmarkt", "Uitmarkt"]
    first = events[0]
    assert first.iso_date == "2026-04-27"
    assert first.start_time == "09:00"
    assert first.location == "Oudegracht, Utrecht"
    assert first.description == "Vrijmarkt langs de grachten"
    assert first.category == "markt"
    assert first.detail_url == "https://www.example.nl/agenda/koningsdag"
    assert events[1].iso_date == "2026-08-29"
    assert events[1].start_time is None


def test_extract_feed_reads_rss():
    result = extract_feed(Page(RSS), _ctx())

    assert result.metadata["format"] == "rss"
    assert len(result.events) == 1
    event = result.events[0]
    assert event.title == "Lampionnenoptocht"
    assert event.iso_date == "2026-11-14"
    assert event.description == "Door de binnenstad"
    assert event.category == "family"
    assert event.detail_url == "https://www.example.nl/agenda/lampion"


def test_extract_feed_on_html_reports_discovered_feeds():
    page = Page(
        """<html><head>
        <link rel="alternate" type="application/rss+xml" href="/feed/">
        <link rel="alternate" type="application/rss+xml" href="/comments/feed/">
        </head><body>
        <a href="webcal://www.example.nl/agenda.ics">Agenda in je kalender</a>
        <a href="/over-ons">Over ons</a>
        </body></html>"""
    )

    result = extract_feed(page, _ctx())

    assert result.success is False
    assert result.metadata["reason"] == "not_a_feed"
    assert result.metadata["discovered_feeds"] == [
        "https://www.example.nl/feed/",
        "https://www.example.nl/agenda.ics",
    ]


def test_discover_feed_links_is_bounded():
    anchors = "".join(f'<a href="/cal/{i}.ics">{i}</a>' for i in range(20))
    links = discover_feed_links(Page(f"<html><body>{anchors}</body></html>"), BASE)
    assert len(links) == 10


# --- DOM -----------------------------------------------------------------------------------

DOM_PAGE = """<html><body><div class="agenda">
<article class="event">
  <h3><a href="/agenda/kermis">Kermis op de Grote Markt</a></h3>
  <time datetime="2026-09-14T14:00">14 september</time>
  <span class="location">Grote Markt</span>
  <p class="excerpt">Draaimolens en oliebollen</p>
  <img data-src="/img/kermis.jpg" src="/img/placeholder.gif">
</article>
<article class="event"><h3>Zonder datum evenement</h3></article>
</div></body></html>"""


def test_dom_default_selectors():
    result = extract_dom(Page(DOM_PAGE), _ctx())

    assert result.metadata["selector_group"] == "default"
    assert result.metadata["selector"] == "article.event"
    assert result.metadata["matched_nodes"] == 2
    assert len(result.events) == 1
    event = result.events[0]
    assert event.title == "Kermis op de Grote Markt"
    assert event.iso_date == "2026-09-14"
    assert event.start_time == "14:00"
    assert event.location == "Grote Markt"
    assert event.description == "Draaimolens en oliebollen"
    assert event.detail_url == "https://www.example.nl/agenda/kermis"
    assert event.image_url == "https://www.example.nl/img/kermis.jpg"


def test_dom_operator_selectors_win_and_bad_selectors_are_skipped():
    page = Page(
        """<html><body>
        <div class="custom-card" style="background-image: url('/img/boek.jpg')">
          <a href="/x">Boekenmarkt Deventer</a> zo 2 aug 2026
        </div>
        <article class="event"><h3>Iets anders</h3><time datetime="2026-08-03">3 aug</time></article>
        </body></html>"""
    )

    result = extract_dom(page, _ctx(dom_selectors=("div[", ".custom-card")))

    assert result.metadata["selector_group"] == "operator"
    assert [e.title for e in result.events] == ["Boekenmarkt Deventer"]
    assert result.events[0].iso_date == "2026-08-02"
    assert result.events[0].image_url == "https://www.example.nl/img/boek.jpg"


def test_dom_cms_selectors():
    page = Page(
        """<html><body>
        <div class="eventlist-event"><h1 class="eventlist-title">Open Podium</h1>
        <time class="event-date" datetime="2026-03-20">vr 20 mrt</time></div>
        </body></html>"""
    )

    result = extract_dom(page, _ctx(detected_cms="squarespace"))

    assert result.metadata["selector_group"] == "squarespace"
    assert result.events[0].iso_date == "2026-03-20"


def test_dom_reports_when_nothing_matched():
    result = extract_dom(Page("<html><body><p>Geen agenda</p></body></html>"), _ctx(dom_selectors=(".x",)))

    assert result.success is False
    assert result.metadata["reason"] == "no_selector_matched"
    assert result.metadata["operator_selectors"] is True
