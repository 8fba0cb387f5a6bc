"""Group messages into threads and rebuild them with fresh identifiers."""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .exceptions import MigrationError
from .models import DiscussionMessage, DiscussionThread

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


def new_comment_id() -> str:
    """Identifier in the ``{XXXXXXXX-XXXX-...}`` form Excel writes."""
    return "{" + str(uuid.uuid4()).upper() + "}"


def group_threads(messages: Sequence[DiscussionMessage]) -> list[DiscussionThread]:
    """Split ``messages`` into threads, in the order their roots were extracted.

    A reply whose parent is not among ``messages`` becomes the root of its own
    thread. Replies keep extraction order.
    """
    by_id = {message.message_id: message for message in messages}
    position = {message.message_id: index for index, message in enumerate(messages)}
    root_of: dict[str, str] = {}

    def find_root(message: DiscussionMessage) -> str:
        chain: list[DiscussionMessage] = []
        seen: set[str] = set()
        current = message
        while True:
            if current.message_id in root_of:
                root_id = root_of[current.message_id]
                break
            if current.is_root:
                root_id = current.message_id
                break
            parent = by_id.get(current.parent_id)
            if parent is None:
                logger.debug(f"Parent {current.parent_id} of message {current.message_id} is missing, treating it as a root")
                root_id = current.message_id
                break
            if current.message_id in seen:
                # Parent cycle: the cycle member extracted first becomes the root
                cycle = chain[next(i for i, m in enumerate(chain) if m.message_id == current.message_id) :]
                root_id = min(cycle, key=lambda m: position[m.message_id]).message_id
                break
            seen.add(current.message_id)
            chain.append(current)
            current = parent
        for member in chain:
            root_of[member.message_id] = root_id
        root_of[message.message_id] = root_id
        return root_id

    threads: dict[str, DiscussionThread] = {}
    pending_replies: list[tuple[str, DiscussionMessage]] = []
    for message in messages:
        root_id = find_root(message)
        if root_id == message.message_id:
            threads[root_id] = DiscussionThread(root=message)
        else:
            pending_replies.append((root_id, message))

    for root_id, message in pending_replies:
        threads[root_id].replies.append(message)
    return list(threads.values())


@dataclass
class Reconstruction:
    """Messages ready to be written, roots before the replies that point at them.

    Attributes:
        messages: Copies of the migrated messages carrying their new identifiers
        id_map: Original identifier -> new identifier
        joined: Original root identifier -> root it was attached to, for threads
            placed on a cell that already held a thread
        thread_of: New identifier -> index of the thread the message came from
    """

    messages: list[DiscussionMessage] = field(default_factory=list)
    id_map: dict[str, str] = field(default_factory=dict)
    joined: dict[str, str] = field(default_factory=dict)
    thread_of: dict[str, int] = field(default_factory=dict)

    def by_thread(self) -> list[tuple[int, list[DiscussionMessage]]]:
        """Messages grouped per source thread, each group in write order."""
        groups: dict[int, list[DiscussionMessage]] = {}
        for message in self.messages:
            groups.setdefault(self.thread_of[message.message_id], []).append(message)
        return sorted(groups.items())


def reconstruct(
    threads: Sequence[DiscussionThread],
    *,
    existing_roots: Mapping[tuple[str, str], str] | None = None,
    id_factory: Callable[[], str] = new_comment_id,
) -> Reconstruction:
    """Assign new identifiers to every message of the placed ``threads``.

    Messages are visited breadth-first across parent/child edges, starting
    from all roots in thread order, so a parent always has its new identifier
    before any reply refers to it. Threads are flat, as Excel keeps them:
    every reply points at the root of its thread, whatever it answered in
    the source. Only one thread may live on a cell: a
    thread whose destination already holds one (from ``existing_roots`` or
    from an earlier thread of this run) is attached to that thread, its root
    becoming a reply and its replies following along.

    Args:
        threads: Threads whose destination has been set
        existing_roots: ``(sheet, cell)`` -> identifier of the thread root already there
        id_factory: Source of new identifiers

    Raises:
        MigrationError: If a thread has no destination
    """
    cell_roots: dict[tuple[str, str], str] = {
        (sheet.casefold(), cell): root_id for (sheet, cell), root_id in (existing_roots or {}).items()
    }
    result = Reconstruction()
    thread_roots: dict[int, str] = {}
    children: dict[str, list[DiscussionMessage]] = {}
    queue: deque[tuple[DiscussionMessage, int, bool]] = deque()

    for index, thread in enumerate(threads):
        if thread.root.destination is None:
            msg = f"Thread {thread.thread_id} has no destination"
            raise MigrationError(msg)
        queue.append((thread.root, index, True))
        for reply in thread.replies:
            children.setdefault(reply.parent_id, []).append(reply)

    while queue:
        message, index, is_thread_root = queue.popleft()
        new_id = id_factory()
        result.id_map[message.message_id] = new_id
        result.thread_of[new_id] = index

        if is_thread_root:
            sheet, cell = message.destination or ("", "")
            key = (sheet.casefold(), cell)
            host_id = cell_roots.get(key)
            if host_id is None:
                cell_roots[key] = new_id
                thread_roots[index] = new_id
                parent_id = ""
            else:
                logger.debug(f"Thread {message.message_id} joins the thread already on {sheet}!{cell}")
                result.joined[message.message_id] = host_id
                thread_roots[index] = host_id
                parent_id = host_id
        else:
            parent_id = thread_roots[index]

        result.messages.append(message.with_identity(new_id, parent_id))
        queue.extend((child, index, False) for child in children.pop(message.message_id, []))

    return result
