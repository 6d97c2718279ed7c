from __future__ import annotations

from dataclasses import replace
from typing import Callable, Iterable

from classroom_engine.chat import reconciler
from classroom_engine.chat.types import Message, MessageId


Listener = Callable[[list[Message]], None]


class MessageList:
    """The single shared, observable message list.

    Every mutation goes through one of the methods below so ordering and
    de-duplication hold; subscribers receive a fresh snapshot after each one.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._items: list[Message] = sorted(messages, key=lambda m: m.timestamp)
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        snap = self.snapshot()
        for fn in list(self._listeners):
            fn(snap)

    def snapshot(self) -> list[Message]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def get(self, mid: MessageId) -> Message | None:
        for m in self._items:
            if m.id == mid:
                return m
        return None

    def reset(self, messages: Iterable[Message] = ()) -> None:
        self._items = reconciler.merge([], messages)
        self._publish()

    def merge(self, incoming: Iterable[Message]) -> None:
        self._items = reconciler.merge(self._items, incoming)
        self._publish()

    def add(self, message: Message) -> None:
        """Append a locally created message (optimistic send, slide reference)."""
        if self.get(message.id) is not None:
            return
        self._items.append(message)
        self._items.sort(key=lambda m: m.timestamp)
        self._publish()

    def append_token(self, mid: MessageId, token: str) -> bool:
        for i, m in enumerate(self._items):
            if m.id == mid:
                self._items[i] = replace(m, text=f"{m.text}{token}")
                self._publish()
                return True
        return False

    def apply_echo(self, inbound: Message) -> None:
        self._items = reconciler.apply_echo(self._items, inbound)
        self._publish()

    def remove_where(self, pred: Callable[[Message], bool]) -> int:
        before = len(self._items)
        self._items = [m for m in self._items if not pred(m)]
        removed = before - len(self._items)
        if removed:
            self._publish()
        return removed
