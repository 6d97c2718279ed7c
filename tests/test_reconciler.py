from classroom_engine.chat.message_list import MessageList
from classroom_engine.chat.reconciler import apply_echo, is_slide_reference, merge, normalize_text
from classroom_engine.chat.types import Message, MessageId


def _msg(mid: MessageId, text: str, ts: int, role: str = "user", sender: str | None = None) -> Message:
    return Message(id=mid, role=role, text=text, timestamp=ts, sender_id=sender)


def test_confirmed_replaces_temporary_with_same_text():
    temp = _msg(MessageId.temp("1"), "hi", 100)
    srv = _msg(MessageId.confirmed("9"), "hi", 105)
    out = merge([temp], [srv])
    assert out == [srv]


def test_temporary_never_replaces_confirmed():
    srv = _msg(MessageId.confirmed("9"), "hi", 100)
    temp = _msg(MessageId.temp("1"), "hi", 200)
    assert merge([srv], [temp]) == [srv]


def test_merge_is_idempotent():
    a = [
        _msg(MessageId.temp("1"), "hi", 100),
        _msg(MessageId.confirmed("2"), "Hello ,  student!", 150, role="assistant"),
    ]
    b = [
        _msg(MessageId.confirmed("9"), "hi", 105),
        _msg(MessageId.confirmed("3"), "Hello, student!", 160, role="assistant"),
        _msg(MessageId.confirmed("4"), "next", 90),
    ]
    once = merge(a, b)
    assert merge(once, b) == once
    assert [m.id.value for m in once] == ["4", "9", "3"]


def test_same_text_different_roles_are_both_kept():
    u = _msg(MessageId.confirmed("1"), "ok", 100, role="user")
    a = _msg(MessageId.confirmed("2"), "ok", 101, role="assistant")
    assert merge([u], [a]) == [u, a]


def test_empty_text_falls_back_to_id_key():
    x = _msg(MessageId.confirmed("1"), "", 100)
    y = _msg(MessageId.confirmed("2"), "  ", 101)
    assert len(merge([x], [y])) == 2


def test_output_sorted_by_timestamp():
    msgs = [_msg(MessageId.confirmed(str(i)), f"m{i}", ts) for i, ts in enumerate([30, 10, 20])]
    assert [m.timestamp for m in merge([], msgs)] == [10, 20, 30]


def test_normalize_text():
    assert normalize_text("  a\n\n b  ,c !") == "a b,c!"


def test_echo_drops_matching_optimistic_entry():
    temp = _msg(MessageId.temp("1"), "hello", 100, sender="u1")
    other = _msg(MessageId.temp("2"), "hello", 100, sender="u2")
    echo = _msg(MessageId.confirmed("s1"), "hello", 110, sender="u1")
    out = apply_echo([temp, other], echo)
    assert out == [other, echo]


def test_echo_with_known_id_is_not_duplicated():
    srv = _msg(MessageId.confirmed("s1"), "hello", 110, sender="u1")
    assert apply_echo([srv], srv) == [srv]


def test_slide_reference_detection():
    assert is_slide_reference(_msg(MessageId.confirmed("section:1"), "Section 1", 1, role="assistant"))
    assert is_slide_reference(_msg(MessageId.confirmed("x"), "![slide](http://a/b.jpg)", 1))
    assert is_slide_reference(_msg(MessageId.confirmed("y"), "[Slide](http://a/b.pdf)", 1))
    assert not is_slide_reference(_msg(MessageId.confirmed("z"), "plain text", 1))


def test_message_list_notifies_and_unsubscribes():
    ml = MessageList()
    seen = []
    unsubscribe = ml.subscribe(lambda snap: seen.append(len(snap)))
    mid = MessageId.temp("a")
    ml.add(_msg(mid, "he", 1, role="assistant"))
    ml.append_token(mid, "llo")
    assert ml.get(mid).text == "hello"
    unsubscribe()
    ml.reset([])
    assert seen == [1, 1]
