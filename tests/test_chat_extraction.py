"""
Chat locator and message extractor, run over synthetic page snapshots.
"""
import pytest

from chat_locator import (
    find_by_chat_label,
    find_by_class_hint,
    find_by_right_column,
    locate_chat_container,
)
from dom_snapshot import DomNode, PageSnapshot
from errors import ChatNotFound
from message_extractor import convert_emoji_codes, extract_messages, is_noise, parse_bubble_text

from conftest import bubble, chat_page, node


def snapshot_of(root: dict, width: int = 1366, height: int = 768) -> PageSnapshot:
    return PageSnapshot.from_dict({"viewport": {"width": width, "height": height}, "root": root})


class TestDomSnapshot:

    def test_from_dict_links_parents(self):
        snapshot = PageSnapshot.from_dict(chat_page([("katie22", "hello there")]))
        elements = list(snapshot.iter_elements())
        assert elements[0].tag == "body"
        row = next(el for el in elements if el.class_name == "row")
        assert row.is_inside(snapshot.root)
        assert row.parent.class_name == "list"

    def test_missing_root(self):
        snapshot = PageSnapshot.from_dict(None)
        assert snapshot.root is None
        assert list(snapshot.iter_elements()) == []

    def test_scrollable_requires_overflow_style(self):
        clipped = DomNode.from_dict(node(scrollHeight=900, clientHeight=300, overflow="hidden"))
        plain = DomNode.from_dict(node(scrollHeight=900, clientHeight=300))
        assert clipped.is_scrollable
        assert not plain.is_scrollable


class TestChatLocator:

    def test_chat_label_finds_scroll_region_next_to_header(self):
        snapshot = PageSnapshot.from_dict(chat_page([("katie22", "hello there")]))
        container = find_by_chat_label(snapshot)
        assert container is not None
        assert container.class_name == "list"

    def test_chat_label_prefers_scrolling_ancestor(self):
        root = node("body", children=[
            node(class_name="sidebar", overflow="auto", children=[
                node(own_text="Chat", text="Chat"),
            ]),
        ])
        container = find_by_chat_label(snapshot_of(root))
        assert container.class_name == "sidebar"

    def test_chat_label_requires_whole_word(self):
        root = node("body", children=[node(own_text="Chatter box", text="Chatter box")])
        assert find_by_chat_label(snapshot_of(root)) is None

    def test_right_column(self):
        column = node(class_name="c1", rect=(900, 0, 400, 700), scrollHeight=1500, clientHeight=700)
        root = node("body", rect=(0, 0, 1366, 768), children=[node(rect=(0, 0, 880, 700)), column])
        container = find_by_right_column(snapshot_of(root))
        assert container.class_name == "c1"

    def test_right_column_ignores_left_side(self):
        column = node(class_name="c1", rect=(100, 0, 400, 700), scrollHeight=1500, clientHeight=700)
        root = node("body", children=[column])
        assert find_by_right_column(snapshot_of(root)) is None

    def test_class_hint(self):
        root = node("body", children=[
            node(class_name="comment-feed", rect=(0, 0, 150, 600)),
            node(class_name="LiveChatMessages", rect=(0, 0, 300, 500)),
        ])
        container = find_by_class_hint(snapshot_of(root))
        assert container.class_name == "LiveChatMessages"

    def test_falls_through_strategies_in_order(self):
        root = node("body", children=[node(class_name="message-list", rect=(0, 0, 300, 500))])
        container = locate_chat_container(snapshot_of(root))
        assert container.class_name == "message-list"

    def test_no_container_raises(self):
        root = node("body", children=[node(class_name="footer", rect=(0, 0, 300, 500))])
        with pytest.raises(ChatNotFound):
            locate_chat_container(snapshot_of(root))

    def test_empty_page_raises(self):
        with pytest.raises(ChatNotFound):
            locate_chat_container(PageSnapshot.from_dict({}))


class TestNoiseFilter:

    @pytest.mark.parametrize("text", [
        "Welcome to the stream!",
        "This stream may contain explicit content",
        "https://example.com/promo",
        "12K FOLLOWERS",
        "JOIN NOW FOR DEALS",
        "lol",
        "user123",
    ])
    def test_noise(self, text):
        assert is_noise(text)

    @pytest.mark.parametrize("text", [
        "katie22\nI'll take the blue one",
        "bob: nice colors",
    ])
    def test_real_messages(self, text):
        assert not is_noise(text)


class TestParseBubble:

    def test_two_lines(self):
        assert parse_bubble_text("katie22\nI'll take the blue one") == ("katie22", "I'll take the blue one")

    def test_colon_form(self):
        assert parse_bubble_text("bob: nice colors") == ("bob", "nice colors")

    def test_first_word_is_username(self):
        assert parse_bubble_text("mike_77 size 9?") == ("mike_77", "size 9?")

    def test_username_is_cleaned(self):
        assert parse_bubble_text("@katie.22\nhello there") == ("katie22", "hello there")

    def test_rejects_single_word(self):
        assert parse_bubble_text("hello") is None

    def test_rejects_long_username(self):
        assert parse_bubble_text("a_really_long_username_here\nhi there") is None

    def test_emoji_shortcodes(self):
        assert convert_emoji_codes("love it :fire:") == "love it \U0001F525"


class TestExtractMessages:

    def container(self, messages):
        snapshot = PageSnapshot.from_dict(chat_page(messages))
        return locate_chat_container(snapshot)

    def test_reads_each_bubble_once(self):
        messages = extract_messages(self.container([
            ("katie22", "I'll take the blue one"),
            ("bob", "nice colors"),
        ]))
        assert [(m.username, m.message) for m in messages] == [
            ("katie22", "I'll take the blue one"),
            ("bob", "nice colors"),
        ]

    def test_duplicate_bubbles_collapse(self):
        messages = extract_messages(self.container([("bob", "nice colors"), ("bob", "nice colors")]))
        assert len(messages) == 1

    def test_noise_rows_skipped(self):
        container = self.container([("bob", "nice colors")])
        container.children.append(DomNode.from_dict(
            node(text="Welcome to the stream everyone", rect=(1000, 400, 300, 40)), container,
        ))
        messages = extract_messages(container)
        assert [m.username for m in messages] == ["bob"]

    def test_small_and_hidden_nodes_skipped(self):
        tiny = bubble("ann", "need that jacket")
        tiny["rect"]["width"] = 50
        for child in tiny["children"]:
            child["rect"]["width"] = 50
        hidden = bubble("joe", "how much for the hat")
        hidden["visible"] = False
        for child in hidden["children"]:
            child["visible"] = False
        root = node("body", children=[node(class_name="chat", rect=(0, 0, 300, 500), children=[tiny, hidden])])
        container = locate_chat_container(snapshot_of(root))
        assert extract_messages(container) == []

    def test_wrapper_with_many_lines_is_descended(self):
        rows = [bubble("bob", "nice colors"), bubble("ann", "need that jacket")]
        wrapper = node(text="bob\nnice colors\nann\nneed that jacket", rect=(0, 0, 300, 200), children=rows)
        root = node("body", children=[node(class_name="chat", rect=(0, 0, 300, 500), children=[wrapper])])
        messages = extract_messages(locate_chat_container(snapshot_of(root)))
        assert [m.username for m in messages] == ["bob", "ann"]
