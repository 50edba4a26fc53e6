import pytest

from cabinet.config import QueryItem
from cabinet.crawlers import FourChanCrawler, check_if_matched, compile_query
from cabinet.models import ThreadNode

from fakes import entry, make_board, make_thread, watcher_config


def test_both_target_include_only_matches():
    thread = make_thread(1, title="foo bar")
    assert check_if_matched([entry(["g"], "foo")], thread)


def test_both_target_exclude_wins():
    thread = make_thread(1, title="foo bar")
    assert not check_if_matched([entry(["g"], "foo", ("bar", {"exclude": True}))], thread)


def test_only_first_entry_for_board_is_consulted():
    thread = make_thread(1, title="linux desktop")
    entries = [entry(["g"], "windows"), entry(["g"], "linux")]
    assert not check_if_matched(entries, thread)


def test_later_entry_used_when_earlier_entries_skip_the_board():
    thread = make_thread(1, title="linux desktop")
    entries = [entry(["wg"], "windows"), entry(["g"], "linux")]
    assert check_if_matched(entries, thread)


def test_unlisted_board_never_matches():
    thread = make_thread(1, title="linux", board=make_board("v"))
    assert not check_if_matched([entry(["g"], "linux")], thread)


def test_missing_board_raises():
    node = ThreadNode(id="x", board_code="", title="linux", content=None, is_archived=True)
    with pytest.raises(ValueError):
        check_if_matched([entry(["g"], "linux")], node)


def test_text_query_is_case_sensitive_unless_asked():
    thread = make_thread(1, title="Linux")
    assert not check_if_matched([entry(["g"], "linux")], thread)
    assert check_if_matched([entry(["g"], ("linux", {"case_insensitive": True}))], thread)


def test_regex_query_with_flags():
    thread = make_thread(1, content="first line\nDark theme")
    query = QueryItem(r"^dark", type="regex", ignore_case=True, multiline=True)
    assert check_if_matched([entry(["g"], query, target="content")], thread)


def test_invalid_regex_falls_back_to_substring():
    compiled = compile_query(QueryItem("c++ (", type="regex"))
    assert compiled.regex is None
    assert compiled.matches("learning c++ (again)")
    assert not compiled.matches("learning rust")


def test_title_target_ignores_content_hits():
    thread = make_thread(1, title="wallpaper dump", content="linux")
    assert not check_if_matched([entry(["g"], "linux", target="title")], thread)
    assert check_if_matched([entry(["g"], "wallpaper", target="title")], thread)


def test_title_target_still_honours_content_exclusion():
    thread = make_thread(1, title="wallpaper dump", content="requests only")
    e = entry(["g"], "wallpaper", ("requests", {"exclude": True}), target="title")
    assert not check_if_matched([e], thread)


def test_title_target_without_content_skips_content_exclusion():
    thread = make_thread(1, title="wallpaper dump", content=None)
    e = entry(["g"], "wallpaper", ("requests", {"exclude": True}), target="title")
    assert check_if_matched([e], thread)


def test_content_target_mirrors_title_target():
    thread = make_thread(1, title="no requests", content="wallpaper dump")
    e = entry(["g"], "wallpaper", ("requests", {"exclude": True}), target="content")
    assert not check_if_matched([e], thread)
    assert check_if_matched([entry(["g"], "wallpaper", target="content")], make_thread(2, content="wallpaper"))


def test_persisted_threads_are_matchable():
    cfg = watcher_config("w", entry(["g"], "linux"))
    node = ThreadNode(id="a::g::1", board_code="g", title="linux", content=None, is_archived=True)
    assert FourChanCrawler.check_if_matched(cfg, node)
