# branchchat/service/branch_manager.py

"""
Branch Manager

Owns the branch/version DAG of a chat:

- the trunk (``chat.base_messages``) holds the longest common prefix of
  every branch's full transcript
- each branch stores only what follows the trunk
- editing a message forks a new branch, the old line stays addressable
- deletions only ever touch the active branch
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from branchchat.database.store import ChatStore, Collection
from branchchat.errors import InvalidOperation, NoActiveBranch, NotFound
from branchchat.model import (
    Branch,
    BranchView,
    Chat,
    EditHistoryEntry,
    Message,
    Role,
)

logger = logging.getLogger(__name__)

MAIN_BRANCH_NAME = "Main"


class DeleteMode(str, Enum):
    SINGLE = "single"
    FROM_HERE = "from_here"
    ALL_AFTER = "all_after"


def common_prefix(transcripts: Sequence[List[str]]) -> List[str]:
    if not transcripts:
        return []
    prefix = list(transcripts[0])
    for t in transcripts[1:]:
        n = 0
        while n < len(prefix) and n < len(t) and prefix[n] == t[n]:
            n += 1
        prefix = prefix[:n]
    return prefix


class BranchManager:
    def __init__(self, store: ChatStore):
        self.store = store
        # structural edits touch several documents, serialize them per chat
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, chat_id: str) -> asyncio.Lock:
        return self._locks[chat_id]

    # =====================================================
    # Reads
    # =====================================================

    async def active_branch(self, chat: Chat) -> Branch:
        if not chat.active_branch_id:
            raise NoActiveBranch(f"Chat {chat.id} has no active branch")
        branch = await self.store.get_branch(chat.active_branch_id)
        if branch is None or branch.chat_id != chat.id:
            raise NoActiveBranch(f"Active branch {chat.active_branch_id} of chat {chat.id} is missing")
        return branch

    async def main_branch(self, chat_id: str) -> Branch:
        for branch in await self.store.list_branches(chat_id):
            if branch.is_main:
                return branch
        raise NoActiveBranch(f"Chat {chat_id} has no main branch")

    async def list_branches(self, chat_id: str) -> List[Branch]:
        return await self.store.list_branches(chat_id)

    async def transcript_ids(self, chat: Chat) -> List[str]:
        branch = await self.active_branch(chat)
        return chat.base_messages + branch.messages

    async def transcript(self, chat: Chat) -> List[Message]:
        return await self.store.get_messages(await self.transcript_ids(chat))

    async def message_branches(self, message: Message) -> Optional[BranchView]:
        """
        Navigation view over a message's original line and the forks made
        from it, e.g. "2/3" when the second alternative is being shown.

        Returns None when the message was never edited.
        """
        if not message.branches:
            return None

        chat = await self.store.require_chat(message.chat_id)
        active = set(await self.transcript_ids(chat))

        options = [message.branch_id or ""] + list(message.branches)
        current = 0
        if message.id not in active:
            for i, fork_id in enumerate(message.branches, start=1):
                # the first message a fork owns is the edited replacement
                owned = await self.store.list_messages(chat.id, branch_id=fork_id)
                if owned and owned[0].id in active:
                    current = i
                    break
        return BranchView(
            message_id=message.id,
            branch_ids=options,
            current_index=current,
            total=len(options),
        )

    # =====================================================
    # Chat bootstrap
    # =====================================================

    async def create_main_branch(self, chat: Chat) -> Branch:
        branch = Branch(chat_id=chat.id, is_main=True, name=MAIN_BRANCH_NAME)
        await self.store.insert(Collection.BRANCHES, branch)

        def activate(c: Chat) -> None:
            c.active_branch_id = branch.id
            c.active_messages = list(c.base_messages)
            c.updated_at = datetime.utcnow()

        await self.store.update_chat(chat.id, activate)
        return branch

    # =====================================================
    # Append
    # =====================================================

    async def append_to_active_branch(self, chat_id: str, message_id: str) -> Branch:
        async with self.lock(chat_id):
            chat = await self.store.require_chat(chat_id)
            branch = await self.active_branch(chat)

            def append(b: Branch) -> None:
                b.messages.append(message_id)
                b.updated_at = datetime.utcnow()

            branch = await self.store.update_branch(branch.id, append)
            await self.store.patch(Collection.MESSAGES, message_id, branch_id=branch.id)
            await self._refresh_active_messages(chat_id)
            return branch

    # =====================================================
    # Fork (edit)
    # =====================================================

    async def fork_at(self, message: Message, new_content: str) -> Tuple[Message, Branch]:
        """
        Edit ``message`` by forking.

        The new branch's transcript is everything strictly before the edited
        message followed by a new message carrying ``new_content``. The chat
        switches to the new branch.

        Returns:
            (new message, new branch)
        """
        async with self.lock(message.chat_id):
            chat = await self.store.require_chat(message.chat_id)
            full = await self.transcript_ids(chat)
            if message.id not in full:
                raise InvalidOperation("Only messages on the active branch can be edited")
            index = full.index(message.id)

            if index < len(chat.base_messages):
                chat = await self._split_base(chat, index)

            number = len(message.branches) + 2
            branch = Branch(
                chat_id=chat.id,
                name=f"Branch {number}",
                root_message_id=message.id,
            )
            edited = Message(
                chat_id=chat.id,
                branch_id=branch.id,
                role=message.role,
                content=new_content,
                model=message.model,
                attachments=[a.model_copy() for a in message.attachments],
                commands=list(message.commands),
                edit_history=message.edit_history
                + [EditHistoryEntry(content=message.content, timestamp=datetime.utcnow())],
            )
            branch.messages = full[len(chat.base_messages):index] + [edited.id]

            await self.store.insert(Collection.MESSAGES, edited)
            await self.store.insert(Collection.BRANCHES, branch)
            await self.store.update_message(message.id, lambda m: m.branches.append(branch.id))

            def activate(c: Chat) -> None:
                c.active_branch_id = branch.id
                c.updated_at = datetime.utcnow()

            await self.store.update_chat(chat.id, activate)
            await self._normalize(chat.id)

            logger.info(f"🌿 Forked chat {chat.id} at message {message.id} -> {branch.name} ({branch.id})")
            branch = await self.store.get_branch(branch.id)
            return edited, branch

    # =====================================================
    # Navigation
    # =====================================================

    async def switch_branch(self, chat_id: str, branch_id: str) -> Chat:
        async with self.lock(chat_id):
            branch = await self.store.get_branch(branch_id)
            if branch is None or branch.chat_id != chat_id:
                raise NotFound(f"Branch not found: {branch_id}")

            def activate(c: Chat) -> None:
                c.active_branch_id = branch.id
                c.active_messages = c.base_messages + branch.messages
                c.updated_at = datetime.utcnow()

            return await self.store.update_chat(chat_id, activate)

    # =====================================================
    # Delete
    # =====================================================

    async def delete_message(
        self,
        message: Message,
        mode: DeleteMode = DeleteMode.SINGLE,
    ) -> Tuple[int, int]:
        """
        Remove messages from the active transcript.

        Args:
            message: anchor message
            mode: SINGLE removes the message (a user turn takes the assistant
                reply right after it along), FROM_HERE removes it and all that
                follows, ALL_AFTER keeps it and removes what follows

        Returns:
            (deleted_count, from_index)
        """
        async with self.lock(message.chat_id):
            chat = await self.store.require_chat(message.chat_id)
            full = await self.transcript_ids(chat)
            if message.id not in full:
                raise NotFound(f"Message {message.id} is not on the active branch")
            index = full.index(message.id)

            if mode == DeleteMode.SINGLE:
                doomed = [index]
                if message.role == Role.USER and index + 1 < len(full):
                    following = await self.store.get_message(full[index + 1])
                    if following is not None and following.role == Role.ASSISTANT:
                        doomed.append(index + 1)
            elif mode == DeleteMode.FROM_HERE:
                doomed = list(range(index, len(full)))
            else:
                doomed = list(range(index + 1, len(full)))

            if not doomed:
                return 0, index + 1
            from_index = doomed[0]

            if from_index < len(chat.base_messages):
                chat = await self._split_base(chat, from_index)

            removed_ids = [full[i] for i in doomed]
            removed = set(removed_ids)

            def prune(b: Branch) -> None:
                b.messages = [m for m in b.messages if m not in removed]
                b.updated_at = datetime.utcnow()

            branch = await self.store.update_branch(chat.active_branch_id, prune)

            if not branch.is_main and not branch.messages:
                main = await self.main_branch(chat.id)
                await self.store.patch(Collection.CHATS, chat.id, active_branch_id=main.id)
                await self._drop_branch(branch)
                logger.info(f"🗑️ Branch {branch.name} emptied, chat {chat.id} back on main")

            await self._normalize(chat.id)
            await self._collect(chat.id, removed_ids)

            logger.info(f"🗑️ Deleted {len(removed_ids)} message(s) from chat {chat.id} at index {from_index}")
            return len(removed_ids), from_index

    async def delete_chat_documents(self, chat_id: str) -> None:
        for message in await self.store.list_messages(chat_id):
            await self.store.delete(Collection.MESSAGES, message.id)
        for branch in await self.store.list_branches(chat_id):
            await self.store.delete(Collection.BRANCHES, branch.id)
        self._locks.pop(chat_id, None)

    # =====================================================
    # Internals
    # =====================================================

    async def _refresh_active_messages(self, chat_id: str) -> Chat:
        chat = await self.store.require_chat(chat_id)
        branch = await self.active_branch(chat)

        def refresh(c: Chat) -> None:
            c.active_messages = c.base_messages + branch.messages
            c.updated_at = datetime.utcnow()

        return await self.store.update_chat(chat_id, refresh)

    async def _split_base(self, chat: Chat, at: int) -> Chat:
        """Push ``base_messages[at:]`` down into every branch."""
        tail = chat.base_messages[at:]
        if not tail:
            return chat
        for branch in await self.store.list_branches(chat.id):
            await self.store.update_branch(branch.id, lambda b: setattr(b, "messages", tail + b.messages))

        def shrink(c: Chat) -> None:
            c.base_messages = c.base_messages[:at]

        return await self.store.update_chat(chat.id, shrink)

    async def _normalize(self, chat_id: str) -> Chat:
        """Make the trunk the longest common prefix of every branch's full transcript."""
        chat = await self.store.require_chat(chat_id)
        branches = await self.store.list_branches(chat_id)
        fulls = {b.id: chat.base_messages + b.messages for b in branches}
        base = common_prefix(list(fulls.values()))

        for branch in branches:
            rest = fulls[branch.id][len(base):]
            if rest != branch.messages:
                await self.store.update_branch(branch.id, lambda b, rest=rest: setattr(b, "messages", rest))

        if chat.active_branch_id not in fulls:
            raise NoActiveBranch(f"Active branch {chat.active_branch_id} of chat {chat_id} is missing")
        active = fulls[chat.active_branch_id]

        def rebase(c: Chat) -> None:
            c.base_messages = base
            c.active_messages = active
            c.updated_at = datetime.utcnow()

        return await self.store.update_chat(chat_id, rebase)

    async def _referenced(self, chat_id: str) -> Set[str]:
        chat = await self.store.require_chat(chat_id)
        refs = set(chat.base_messages)
        for branch in await self.store.list_branches(chat_id):
            refs.update(branch.messages)
        return refs

    async def _drop_branch(self, branch: Branch) -> None:
        await self.store.delete(Collection.BRANCHES, branch.id)
        if branch.root_message_id:
            root = await self.store.get_message(branch.root_message_id)
            if root is not None:
                await self.store.update_message(
                    root.id, lambda m: setattr(m, "branches", [b for b in m.branches if b != branch.id])
                )

    async def _collect(self, chat_id: str, candidates: List[str]) -> None:
        """Delete message documents no branch references, with the forks rooted at them."""
        pending = list(candidates)
        while pending:
            refs = await self._referenced(chat_id)
            message_id = pending.pop(0)
            if message_id in refs:
                continue
            message = await self.store.get_message(message_id)
            if message is None:
                continue
            await self.store.delete(Collection.MESSAGES, message_id)
            for fork_id in message.branches:
                fork = await self.store.get_branch(fork_id)
                if fork is None or fork.is_main:
                    continue
                chat = await self.store.require_chat(chat_id)
                if chat.active_branch_id == fork.id:
                    main = await self.main_branch(chat_id)
                    await self.store.patch(Collection.CHATS, chat_id, active_branch_id=main.id)
                await self.store.delete(Collection.BRANCHES, fork.id)
                pending.extend(fork.messages)
                logger.info(f"🗑️ Dropped fork {fork.name} rooted at deleted message {message_id}")
        await self._normalize(chat_id)
