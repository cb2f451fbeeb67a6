"""Prompt-context cache: reuse of previously sent conversation prefixes.

Entries are keyed by (project, model, system prompt hash, messages hash).
A lookup first tries the exact key, then falls back to a prefix match over
the project's entries that share the same system prompt and model: the new
message sequence is compared position by position against each cached
sequence, and the longest qualifying overlap wins.

Capacity is enforced before every insert. Under pressure the lowest-scoring
~20% of entries are evicted, where

    score = hit_count * 1000 / (ms_since_last_use + 1)
            - age_ms / 60000
            - token_count / 1000

so frequently and recently used entries survive while old and large ones go
first. Expired entries are purged by a background sweeper thread.

Lookups never raise: any internal anomaly degrades to a miss.
"""

import hashlib
import json
import logging
import threading
from typing import Callable, Iterable, Optional, Union

from src.cache.lru import LRUMap
from src.cache.schemas import (
    CacheConfig,
    CacheEntry,
    CacheHitResult,
    CacheStats,
    Message,
)
from src.llm.tokens import estimate_tokens, now_ms

logger = logging.getLogger(__name__)

# Fraction of entries evicted in one capacity pass
EVICTION_FRACTION = 0.2

# Characters of each message / of the system prompt kept in serialized data
MESSAGE_PREVIEW_CHARS = 500
SYSTEM_PREVIEW_CHARS = 1000

MessageLike = Union[Message, dict]


def content_hash(content: str) -> str:
    """Fast content hash (BLAKE2b, 8-byte digest). Not used for security."""
    return hashlib.blake2b(content.encode("utf-8"), digest_size=8).hexdigest()


def make_cache_key(
    project_id: str,
    model_name: str,
    system_prompt_hash: str,
    context_hash: str,
) -> str:
    return f"{project_id}:{model_name}:{system_prompt_hash}:{context_hash}"


def _normalize(messages: Iterable[MessageLike]) -> list[Message]:
    return [m if isinstance(m, Message) else Message(**m) for m in messages]


def _message_signature(message: Message) -> str:
    return f"{message.role}:{message.content[:MESSAGE_PREVIEW_CHARS]}"


def _messages_hash(messages: list[Message]) -> str:
    canonical = json.dumps(
        [{"role": m.role, "content": m.content} for m in messages],
        ensure_ascii=False,
    )
    return content_hash(canonical)


class PromptCache:
    """In-process cache of conversation contexts.

    Construct one per process (or per test) and call shutdown() when done.
    All public methods are serialized behind a single re-entrant lock.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config or CacheConfig()
        self._clock = clock or now_ms
        self._lock = threading.RLock()
        self._entries: LRUMap[str, CacheEntry] = LRUMap(
            self.config.max_indexed_entries,
            on_evict=self._on_lru_evict,
        )
        self._project_index: dict[str, set[str]] = {}
        self._hits = 0
        self._misses = 0
        self._total_time_saved_ms = 0
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    # ── Configuration ──────────────────────────────────────

    def configure(self, **changes) -> CacheConfig:
        """Validate and apply configuration changes."""
        with self._lock:
            self.config = CacheConfig(**{**self.config.model_dump(), **changes})
            self._entries.max_size = self.config.max_indexed_entries
            logger.info(f"Prompt cache configured: {self.config.model_dump()}")
            return self.config

    def is_enabled(self) -> bool:
        return self.config.enabled

    # ── Lookup ─────────────────────────────────────────────

    def find_cache_hit(
        self,
        project_id: str,
        system_prompt: str,
        messages: Iterable[MessageLike],
        model_name: str,
    ) -> CacheHitResult:
        """Find a reusable cached context for this conversation."""
        with self._lock:
            if not self.config.enabled:
                self._misses += 1
                return CacheHitResult(hit=False)

            try:
                result = self._lookup(project_id, system_prompt, _normalize(messages), model_name)
            except Exception as e:
                logger.warning(f"Prompt cache lookup failed for project {project_id}: {e}")
                result = None

            if result is None:
                self._misses += 1
                return CacheHitResult(hit=False)

            self._hits += 1
            self._total_time_saved_ms += result.time_saved_ms or 0
            return result

    def _lookup(
        self,
        project_id: str,
        system_prompt: str,
        messages: list[Message],
        model_name: str,
    ) -> Optional[CacheHitResult]:
        now = self._clock()
        system_prompt_hash = content_hash(system_prompt)
        cache_key = make_cache_key(
            project_id, model_name, system_prompt_hash, _messages_hash(messages),
        )

        exact = self._entries.peek(cache_key)
        if exact is not None:
            if self._is_expired(exact, now):
                self._remove(cache_key)
            else:
                self._record_hit(exact, now)
                time_saved_ms = self.estimate_time_saved(exact.token_count)
                logger.info(
                    f"Prompt cache hit (exact): project={project_id}, "
                    f"tokens={exact.token_count}, saved~{time_saved_ms}ms"
                )
                return CacheHitResult(
                    hit=True,
                    entry=exact.model_copy(),
                    prefix_length=exact.token_count,
                    reusable_tokens=exact.token_count,
                    time_saved_ms=time_saved_ms,
                )

        return self._find_prefix_match(project_id, system_prompt_hash, messages, model_name, now)

    def _find_prefix_match(
        self,
        project_id: str,
        system_prompt_hash: str,
        messages: list[Message],
        model_name: str,
        now: int,
    ) -> Optional[CacheHitResult]:
        best: Optional[CacheEntry] = None
        best_overlap = 0

        for cache_key in list(self._project_index.get(project_id, ())):
            entry = self._entries.peek(cache_key)
            if entry is None:
                continue
            if entry.system_prompt_hash != system_prompt_hash or entry.model_name != model_name:
                continue
            if self._is_expired(entry, now):
                continue

            overlap = self._prefix_overlap(entry, messages)
            if overlap > best_overlap and overlap >= self.config.min_reuse_threshold * entry.token_count:
                best, best_overlap = entry, overlap

        if best is None:
            return None

        self._record_hit(best, now)
        time_saved_ms = self.estimate_time_saved(best_overlap)
        logger.info(
            f"Prompt cache hit (prefix): project={project_id}, "
            f"reusable={best_overlap}/{best.token_count} tokens, saved~{time_saved_ms}ms"
        )
        return CacheHitResult(
            hit=True,
            entry=best.model_copy(),
            prefix_length=best_overlap,
            reusable_tokens=best_overlap,
            time_saved_ms=time_saved_ms,
        )

    @staticmethod
    def _prefix_overlap(entry: CacheEntry, messages: list[Message]) -> int:
        """Token estimate of the leading messages shared with a cached entry."""
        try:
            cached_messages = json.loads(entry.cache_data).get("messages", [])
        except (ValueError, AttributeError):
            return 0

        overlap = 0
        for cached, current in zip(cached_messages, messages):
            if cached != _message_signature(current):
                break
            overlap += estimate_tokens(current.content)
        return overlap

    def estimate_time_saved(self, token_count: int) -> int:
        """Milliseconds of generation avoided by reusing `token_count` tokens."""
        return int(token_count / self.config.assumed_tokens_per_second * 1000)

    # ── Storage ────────────────────────────────────────────

    def store_context(
        self,
        project_id: str,
        system_prompt: str,
        messages: Iterable[MessageLike],
        model_name: str,
        task_type: str = "",
    ) -> str:
        """Cache a conversation context. Returns its key, or "" if not cached."""
        with self._lock:
            if not self.config.enabled:
                return ""

            messages = _normalize(messages)
            token_count = estimate_tokens(system_prompt) + sum(
                estimate_tokens(m.content) for m in messages
            )
            if token_count > self.config.max_tokens_per_entry:
                logger.warning(
                    f"Context too large for prompt cache: {token_count} tokens "
                    f"(max {self.config.max_tokens_per_entry})"
                )
                return ""

            system_prompt_hash = content_hash(system_prompt)
            context_hash = _messages_hash(messages)
            cache_key = make_cache_key(project_id, model_name, system_prompt_hash, context_hash)

            # Replacing an entry must not count it against capacity
            self._remove(cache_key)
            self._enforce_capacity(token_count)

            now = self._clock()
            entry = CacheEntry(
                id=cache_key,
                project_id=project_id,
                context_hash=context_hash,
                system_prompt_hash=system_prompt_hash,
                cache_data=json.dumps({
                    "messages": [_message_signature(m) for m in messages],
                    "system_prompt": system_prompt[:SYSTEM_PREVIEW_CHARS],
                }, ensure_ascii=False),
                token_count=token_count,
                created_at=now,
                last_used_at=now,
                hit_count=0,
                model_name=model_name,
                task_type=task_type,
            )
            self._entries.set(cache_key, entry)
            self._project_index.setdefault(project_id, set()).add(cache_key)
            self._ensure_sweeper()

            logger.debug(f"Context cached: project={project_id}, tokens={token_count}, key={cache_key[:40]}")
            return cache_key

    def _enforce_capacity(self, incoming_tokens: int) -> int:
        """Evict low-scoring entries so the incoming entry fits. Returns count removed."""
        total = self._total_tokens()
        over_count = len(self._entries) >= self.config.max_entries
        over_tokens = total + incoming_tokens > self.config.max_total_tokens
        if not (over_count or over_tokens) or not len(self._entries):
            return 0

        now = self._clock()
        ranked = sorted(self._entries.values(), key=lambda e: self.eviction_score(e, now))
        batch = max(1, int(len(ranked) * EVICTION_FRACTION))

        removed = 0
        for entry in ranked:
            if removed >= batch and total + incoming_tokens <= self.config.max_total_tokens:
                break
            self._remove(entry.id)
            total -= entry.token_count
            removed += 1

        logger.info(
            f"Prompt cache eviction: removed {removed}, "
            f"remaining {len(self._entries)} entries / {total} tokens"
        )
        return removed

    def eviction_score(self, entry: CacheEntry, now: Optional[int] = None) -> float:
        """Higher scores survive eviction longer."""
        now = self._clock() if now is None else now
        age = now - entry.created_at
        since_last_use = now - entry.last_used_at
        return (
            entry.hit_count * 1000 / (since_last_use + 1)
            - age / 60000
            - entry.token_count / 1000
        )

    # ── Invalidation ───────────────────────────────────────

    def invalidate_project(self, project_id: str) -> int:
        """Drop every entry of a project. Returns the number removed."""
        with self._lock:
            keys = self._project_index.pop(project_id, set())
            removed = sum(1 for key in keys if self._entries.delete(key))
            logger.info(f"Prompt cache invalidated for project {project_id}: {removed} entries")
            return removed

    def invalidate_entry(self, cache_key: str) -> bool:
        with self._lock:
            return self._remove(cache_key)

    def cleanup_expired(self) -> int:
        """Purge TTL-expired entries. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [e.id for e in self._entries.values() if self._is_expired(e, now)]
            for key in expired:
                self._remove(key)
            if expired:
                logger.info(f"Prompt cache: {len(expired)} expired entries cleaned")
            return len(expired)

    # ── Introspection ──────────────────────────────────────

    def get_stats(self) -> CacheStats:
        with self._lock:
            entries = self._entries.values()
            memory_bytes = sum(len(e.cache_data) * 2 for e in entries)
            total_requests = self._hits + self._misses

            return CacheStats(
                total_entries=len(entries),
                total_tokens_cached=sum(e.token_count for e in entries),
                hit_rate=self._hits / total_requests if total_requests else 0.0,
                total_hits=self._hits,
                total_misses=self._misses,
                avg_time_saved_ms=round(self._total_time_saved_ms / self._hits) if self._hits else 0,
                memory_usage_mb=round(memory_bytes / (1024 * 1024), 2),
            )

    def get_project_entries(self, project_id: str) -> list[CacheEntry]:
        with self._lock:
            entries = (self._entries.peek(k) for k in self._project_index.get(project_id, ()))
            return sorted(
                (e.model_copy() for e in entries if e is not None),
                key=lambda e: e.created_at,
            )

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._project_index.clear()
            self.reset_stats()
            logger.info("Prompt cache cleared")

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._total_time_saved_ms = 0

    # ── Lifecycle ──────────────────────────────────────────

    def shutdown(self) -> None:
        """Stop the sweeper thread and drop all cached state."""
        sweeper = self._sweeper
        self._stop_sweeper.set()
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=5)

        with self._lock:
            self._sweeper = None
            self._stop_sweeper = threading.Event()
            self._entries.clear()
            self._project_index.clear()
        logger.info("Prompt cache shut down")

    def _ensure_sweeper(self) -> None:
        if self._sweeper is not None or self.config.sweep_interval_ms <= 0:
            return
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(self._stop_sweeper,),
            name="prompt-cache-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def _sweep_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.config.sweep_interval_ms / 1000):
            try:
                self.cleanup_expired()
            except Exception as e:
                logger.error(f"Prompt cache sweep failed: {e}", exc_info=True)

    # ── Internals ──────────────────────────────────────────

    def _is_expired(self, entry: CacheEntry, now: int) -> bool:
        return now - entry.created_at >= self.config.ttl_ms

    def _record_hit(self, entry: CacheEntry, now: int) -> None:
        entry.hit_count += 1
        entry.last_used_at = now
        self._entries.touch(entry.id)

    def _total_tokens(self) -> int:
        return sum(e.token_count for e in self._entries.values())

    def _remove(self, cache_key: str) -> bool:
        entry = self._entries.peek(cache_key)
        if entry is None:
            return False
        self._entries.delete(cache_key)
        self._unindex(entry.project_id, cache_key)
        return True

    def _unindex(self, project_id: str, cache_key: str) -> None:
        keys = self._project_index.get(project_id)
        if keys is None:
            return
        keys.discard(cache_key)
        if not keys:
            del self._project_index[project_id]

    def _on_lru_evict(self, cache_key: str, entry: CacheEntry) -> None:
        self._unindex(entry.project_id, cache_key)
