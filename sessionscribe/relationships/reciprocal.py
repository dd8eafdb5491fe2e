from __future__ import annotations

"""
Reconcile one-directional client relationships into two-directional links.

Design intent:
- A saved client's edges are checked against the pool; each missing back
  edge becomes a task, handled strictly one at a time in FIFO order.
- Edge types are stored as "what I am to them"; the other side reads the
  reciprocal label.
"""

import logging
from collections import deque
from dataclasses import dataclass
from threading import RLock
from typing import Deque, Dict, Iterable, List, Optional

from sessionscribe.internal_core.contracts import Client, Relationship
from sessionscribe.internal_core.errors import NoReciprocalTask

logger = logging.getLogger(__name__)

RECIPROCAL_TYPES: Dict[str, str] = {
    "Mum": "Daughter",
    "Mother": "Daughter",
    "Dad": "Son",
    "Father": "Son",
    "Daughter": "Mum",
    "Son": "Dad",
    "Wife": "Husband",
    "Husband": "Wife",
    "Partner": "Partner",
    "Sister": "Sister",
    "Brother": "Brother",
    "Friend": "Friend",
    "Guardian": "Ward",
    "Ward": "Guardian",
}


def reciprocal_type(relationship_type: str) -> str:
    return RECIPROCAL_TYPES.get(relationship_type, relationship_type)


def display_relationship_type(relationship_type: str) -> str:
    """Label for an edge when viewed from the related client's side."""
    return reciprocal_type(relationship_type)


def _has_edge_to(client: Client, other_id: str) -> bool:
    return any(rel.related_client_id == other_id for rel in client.relationships)


@dataclass(frozen=True)
class ReciprocalTask:
    source_id: str
    target_id: str
    source_name: str
    target_name: str
    initial_type: str

    @property
    def suggested_type(self) -> str:
        return reciprocal_type(self.initial_type)

    def as_dict(self) -> dict[str, str]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "source_name": self.source_name,
            "target_name": self.target_name,
            "initial_type": self.initial_type,
            "suggested_type": self.suggested_type,
        }


@dataclass(frozen=True)
class ReciprocalDraft:
    task: ReciprocalTask
    target: Client
    relationships: List[Relationship]


def missing_reciprocals(clients: Iterable[Client]) -> List[ReciprocalTask]:
    """Every edge in the pool whose target has no edge back."""
    pool = list(clients)
    by_id = {client.id: client for client in pool}
    missing: List[ReciprocalTask] = []
    for client in pool:
        for rel in client.relationships:
            target = by_id.get(rel.related_client_id)
            if target is None or _has_edge_to(target, client.id):
                continue
            missing.append(
                ReciprocalTask(
                    source_id=client.id,
                    target_id=target.id,
                    source_name=client.name,
                    target_name=target.name,
                    initial_type=rel.type,
                )
            )
    return missing


def fix_relationship_types(clients: Iterable[Client]) -> List[Client]:
    """
    Repair edges whose type is backwards relative to the edge coming back.
    An edge is kept when either side's reciprocal agrees with the other;
    otherwise it is rewritten as the reciprocal of the reverse edge.
    """
    pool = list(clients)
    by_id = {client.id: client for client in pool}
    fixed: List[Client] = []
    for client in pool:
        relationships: List[Relationship] = []
        changed = False
        for rel in client.relationships:
            related = by_id.get(rel.related_client_id)
            reverse = None
            if related is not None:
                reverse = next(
                    (r for r in related.relationships if r.related_client_id == client.id), None
                )
            if (
                reverse is None
                or reciprocal_type(rel.type) == reverse.type
                or reciprocal_type(reverse.type) == rel.type
            ):
                relationships.append(rel)
                continue
            relationships.append(rel.model_copy(update={"type": reciprocal_type(reverse.type)}))
            changed = True
        if changed:
            logger.info("relationship_types_fixed client_id=%s", client.id)
            fixed.append(client.model_copy(update={"relationships": relationships}))
        else:
            fixed.append(client)
    return fixed


class ReciprocalQueue:
    def __init__(self) -> None:
        self._lock = RLock()
        self._queue: Deque[ReciprocalTask] = deque()
        self._current: Optional[ReciprocalTask] = None
        self._clients: Dict[str, Client] = {}

    @property
    def pending(self) -> List[ReciprocalTask]:
        with self._lock:
            return list(self._queue)

    @property
    def current(self) -> Optional[ReciprocalTask]:
        return self._current

    def _is_queued(self, source_id: str, target_id: str) -> bool:
        tasks = list(self._queue)
        if self._current is not None:
            tasks.append(self._current)
        return any(t.source_id == source_id and t.target_id == target_id for t in tasks)

    def enqueue_reciprocal_check(
        self, saved_client: Client, clients: Iterable[Client]
    ) -> List[ReciprocalTask]:
        """Queue a task for every edge of `saved_client` missing its back edge."""
        with self._lock:
            for client in clients:
                self._clients[client.id] = client
            self._clients[saved_client.id] = saved_client

            added: List[ReciprocalTask] = []
            for rel in saved_client.relationships:
                target = self._clients.get(rel.related_client_id)
                if target is None or target.id == saved_client.id:
                    continue
                if _has_edge_to(target, saved_client.id):
                    continue
                if self._is_queued(saved_client.id, target.id):
                    continue
                task = ReciprocalTask(
                    source_id=saved_client.id,
                    target_id=target.id,
                    source_name=saved_client.name,
                    target_name=target.name,
                    initial_type=rel.type,
                )
                self._queue.append(task)
                added.append(task)
        if added:
            logger.info(
                "reciprocal_tasks_enqueued source_id=%s count=%s pending=%s",
                saved_client.id,
                len(added),
                len(self._queue),
            )
        return added

    def _draft(self, task: ReciprocalTask) -> ReciprocalDraft:
        target = self._clients[task.target_id]
        relationships = list(target.relationships)
        if not _has_edge_to(target, task.source_id):
            relationships.append(
                Relationship(related_client_id=task.source_id, type=task.suggested_type)
            )
        return ReciprocalDraft(task=task, target=target, relationships=relationships)

    def next_task(self) -> Optional[ReciprocalDraft]:
        """Open the head task, or return the one already open."""
        with self._lock:
            while self._current is None and self._queue:
                task = self._queue.popleft()
                if task.target_id not in self._clients:
                    logger.warning("reciprocal_target_missing target_id=%s", task.target_id)
                    continue
                self._current = task
            if self._current is None:
                return None
            return self._draft(self._current)

    def confirm(self, relationship_type: Optional[str] = None) -> Client:
        """Write the back edge onto the target client and close the task."""
        with self._lock:
            task = self._current
            if task is None:
                raise NoReciprocalTask()
            target = self._clients[task.target_id]
            if _has_edge_to(target, task.source_id):
                updated = target
            else:
                edge = Relationship(
                    related_client_id=task.source_id,
                    type=(relationship_type or "").strip() or task.suggested_type,
                )
                updated = target.model_copy(
                    update={"relationships": [*target.relationships, edge]}
                )
                self._clients[target.id] = updated
            self._current = None
        logger.info("reciprocal_confirmed source_id=%s target_id=%s", task.source_id, task.target_id)
        return updated

    def skip(self) -> ReciprocalTask:
        with self._lock:
            task = self._current
            if task is None:
                raise NoReciprocalTask()
            self._current = None
        logger.info("reciprocal_skipped source_id=%s target_id=%s", task.source_id, task.target_id)
        return task
