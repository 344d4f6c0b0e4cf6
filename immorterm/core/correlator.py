"""Conversation correlator - links tmux sessions to assistant conversations.

Detection: a session is "running the assistant" when its pane process tree
contains an assistant process (see `process_tree`).

Matching, per session:
1. Candidates are conversations from the assistant's `history.jsonl`, first
   restricted to this workspace, then broadened to all recent history.
2. Each candidate is scored against the ANSI-stripped session log:
   `exact * exact_weight + phrases * phrase_weight`, where an exact match is a
   recent user message (or early assistant response) found verbatim and a
   phrase match is a 3-word n-gram of those strings found in the log.
3. The best candidate wins if it reaches the threshold. Otherwise: a single
   unclaimed workspace conversation in the recent history tail wins; otherwise
   the conversation whose transcript mtime is closest to the log mtime (within
   `mtime_window_s`) wins; otherwise there is no match.

Sessions whose assistant has exited lose their conversation link.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections import deque
from pathlib import Path
from typing import Iterable, Optional

from immorterm.config.schema import CorrelationConfig
from immorterm.constants import (
    ASSISTANT_HISTORY_FILE,
    ASSISTANT_HOME,
    ASSISTANT_PROJECTS_DIR,
    CONTROL_COMMANDS,
    EXACT_MATCH_MIN_LENGTH,
    EXACT_MATCH_PREFIX_CHARS,
    EXACT_MATCH_RECENT,
    MAX_PHRASES_PER_MESSAGE,
    MAX_PHRASES_TOTAL,
    PHRASE_MIN_WORD_LENGTH,
    PHRASE_WORDS,
    RESPONSE_SAMPLE_SIZE,
    TRANSCRIPT_TAIL_BYTES,
    TRIVIAL_MESSAGES,
)
from immorterm.core import tmux_bridge
from immorterm.core.manifest import RestorationManifest
from immorterm.core.models import (
    ConversationCandidate,
    ConversationMatch,
    CorrelationSweepResult,
    MatchMethod,
    TerminalSession,
)
from immorterm.core.process_tree import find_assistant_pid_async
from immorterm.core.registry import SessionRegistry
from immorterm.logging_config import get_logger
from immorterm.paths import WorkspacePaths
from immorterm.utils import strip_ansi_codes

logger = get_logger(__name__)


def normalize_text(text: str) -> str:
    """Collapse all whitespace runs so wrapped terminal lines still match."""
    return " ".join(text.split())


def is_meaningful_message(text: str, min_length: int) -> bool:
    """True for user messages that can identify a conversation."""
    stripped = text.strip()
    if len(stripped) <= min_length:
        return False
    if any(command in stripped for command in CONTROL_COMMANDS):
        return False
    return stripped.lower() not in TRIVIAL_MESSAGES


def extract_phrases(texts: Iterable[str]) -> list[str]:
    """3-word phrases of longer words, capped per text and overall."""
    phrases: list[str] = []
    for text in texts:
        words = [w for w in text.split() if len(w) >= PHRASE_MIN_WORD_LENGTH]
        per_text = [" ".join(words[i : i + PHRASE_WORDS]) for i in range(len(words) - PHRASE_WORDS + 1)]
        phrases.extend(per_text[:MAX_PHRASES_PER_MESSAGE])
    return phrases[:MAX_PHRASES_TOTAL]


def exact_needles(candidate: ConversationCandidate) -> list[str]:
    """Prefixes of recent messages and early responses to look for verbatim."""
    messages = [m for m in candidate.sample_messages if len(m) > EXACT_MATCH_MIN_LENGTH][-EXACT_MATCH_RECENT:]
    responses = [r for r in candidate.responses if len(r) > EXACT_MATCH_MIN_LENGTH]
    return [normalize_text(text)[:EXACT_MATCH_PREFIX_CHARS] for text in messages + responses]


def score_candidate(candidate: ConversationCandidate, transcript: str, config: CorrelationConfig) -> float:
    """Additive, uncapped similarity score of a candidate against a normalized transcript."""
    exact = sum(1 for needle in exact_needles(candidate) if needle and needle in transcript)
    phrase_sources = [normalize_text(t) for t in candidate.sample_messages + candidate.responses]
    phrases = sum(1 for phrase in extract_phrases(phrase_sources) if phrase in transcript)
    return exact * config.exact_weight + phrases * config.phrase_weight


def best_candidate(
    candidates: list[ConversationCandidate], transcript: str, config: CorrelationConfig
) -> tuple[Optional[ConversationCandidate], float]:
    """Highest-scoring candidate. Ties keep the first one seen."""
    best: Optional[ConversationCandidate] = None
    best_score = 0.0
    for candidate in candidates:
        score = score_candidate(candidate, transcript, config)
        if score > best_score:
            best, best_score = candidate, score
    return best, best_score


def encode_project_dir(workspace_path: str) -> str:
    """Directory name the assistant uses for a project's transcripts."""
    return re.sub(r"[^A-Za-z0-9]", "-", workspace_path)


def read_responses(transcript_path: Path, limit: int = RESPONSE_SAMPLE_SIZE) -> list[str]:
    """First `limit` assistant text blocks of a conversation transcript (JSONL)."""
    responses: list[str] = []
    try:
        with open(transcript_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                if len(responses) >= limit:
                    break
                if not line.strip():
                    continue
                try:
                    entry: object = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict):
                    continue
                message = entry.get("message")
                if not isinstance(message, dict) or message.get("role") != "assistant":
                    continue
                content = message.get("content")
                if isinstance(content, str):
                    responses.append(content)
                elif isinstance(content, list):
                    for block in content:
                        if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                            responses.append(str(block["text"]))
                            break
    except OSError:
        return []
    return responses[:limit]


class ConversationHistory:
    """Read-only access to the assistant's interaction history."""

    def __init__(self, home: Optional[Path] = None) -> None:
        self.home = (home or Path(ASSISTANT_HOME)).expanduser()
        self.history_path = self.home / ASSISTANT_HISTORY_FILE
        self.projects_dir = self.home / ASSISTANT_PROJECTS_DIR

    def transcript_path(self, workspace_path: str, conversation_id: str) -> Path:
        return self.projects_dir / encode_project_dir(workspace_path) / f"{conversation_id}.jsonl"

    def _entries(self, tail: Optional[int] = None) -> list[dict[str, object]]:
        if not self.history_path.exists():
            return []
        entries: list[dict[str, object]] = []
        with open(self.history_path, encoding="utf-8", errors="replace") as f:
            lines: Iterable[str] = deque(f, maxlen=tail) if tail else f
            for line in lines:
                if not line.strip():
                    continue
                try:
                    entry: object = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict) and isinstance(entry.get("sessionId"), str):
                    entries.append(entry)
        return entries

    def candidates(self, workspace_path: Optional[str], config: CorrelationConfig) -> list[ConversationCandidate]:
        """Conversations in the recent history tail, optionally restricted to one project.

        Conversations with no meaningful message are kept (they can still win
        the transcript mtime fallback) but carry no `sample_messages`.
        """
        by_id: dict[str, ConversationCandidate] = {}
        for entry in self._entries(tail=config.candidate_history_tail):
            project = str(entry.get("project") or "")
            if workspace_path is not None and project != workspace_path:
                continue
            conversation_id = str(entry["sessionId"])
            candidate = by_id.get(conversation_id)
            if candidate is None:
                candidate = ConversationCandidate(conversation_id=conversation_id, project_path=project)
                by_id[conversation_id] = candidate
            display = entry.get("display")
            if isinstance(display, str) and is_meaningful_message(display, config.min_message_length):
                candidate.sample_messages.append(display)

        for candidate in by_id.values():
            candidate.sample_messages = candidate.sample_messages[-config.recent_messages :]
            path = self.transcript_path(candidate.project_path, candidate.conversation_id)
            if path.exists():
                candidate.mtime = path.stat().st_mtime
                if candidate.sample_messages:
                    candidate.responses = read_responses(path)
        return list(by_id.values())

    def recent_conversation_ids(self, workspace_path: str, tail: int) -> list[str]:
        """Distinct conversation ids for a project in the last `tail` history lines."""
        seen: dict[str, None] = {}
        for entry in self._entries(tail=tail):
            if entry.get("project") == workspace_path:
                seen[str(entry["sessionId"])] = None
        return list(seen)


def read_transcript(log_path: Path) -> str:
    """ANSI-stripped, whitespace-normalized tail of a session log."""
    with open(log_path, "rb") as f:
        f.seek(0, 2)
        size = f.tell()
        f.seek(max(0, size - TRANSCRIPT_TAIL_BYTES))
        raw = f.read()
    return normalize_text(strip_ansi_codes(raw.decode("utf-8", errors="replace")))


class ConversationCorrelator:
    """Keeps each session's conversation link in step with its running assistant."""

    def __init__(
        self,
        registry: SessionRegistry,
        manifest: RestorationManifest,
        paths: WorkspacePaths,
        config: CorrelationConfig,
        history: Optional[ConversationHistory] = None,
        scan_timeout: float = tmux_bridge.SUBPROCESS_TIMEOUT_DEFAULT,
    ) -> None:
        self.registry = registry
        self.manifest = manifest
        self.paths = paths
        self.config = config
        self.history = history or ConversationHistory()
        self.scan_timeout = scan_timeout
        self.workspace_path = str(paths.root)

    def match(
        self,
        log_path: Path,
        claimed: set[str],
        pool: Optional[list[ConversationCandidate]] = None,
    ) -> Optional[ConversationMatch]:
        """Find the conversation shown in a session log.

        Args:
            log_path: The session's transcript log.
            claimed: Conversation ids already linked to other sessions; excluded
                from the fallbacks.
            pool: Candidates from every project, as returned by
                `ConversationHistory.candidates(None, ...)`. Loaded on demand
                when omitted.
        """
        if not log_path.exists():
            logger.debug("No log at %s, cannot correlate", log_path)
            return None

        transcript = read_transcript(log_path)
        if pool is None:
            pool = self.history.candidates(None, self.config)
        scorable = [c for c in pool if c.sample_messages]
        scopes = (
            (self.workspace_path, [c for c in scorable if c.project_path == self.workspace_path]),
            ("all", scorable),
        )
        for scope, candidates in scopes:
            best, score = best_candidate(candidates, transcript, self.config)
            if best is not None and score >= self.config.threshold:
                logger.debug("Content match %s (score=%.2f, scope=%s)", best.conversation_id, score, scope)
                return ConversationMatch(best.conversation_id, MatchMethod.CONTENT, score)
            logger.debug("No content match at scope %s (best score %.2f)", scope, score)

        recent = [
            cid
            for cid in self.history.recent_conversation_ids(self.workspace_path, self.config.history_tail)
            if cid not in claimed
        ]
        if len(recent) == 1:
            return ConversationMatch(recent[0], MatchMethod.SINGLE_CANDIDATE)

        by_id = {c.conversation_id: c for c in pool if c.project_path == self.workspace_path}
        return self._match_by_mtime(log_path, [by_id[cid] for cid in recent if cid in by_id])

    def _match_by_mtime(self, log_path: Path, candidates: list[ConversationCandidate]) -> Optional[ConversationMatch]:
        log_mtime = log_path.stat().st_mtime
        best_id: Optional[str] = None
        best_diff = 0.0
        for candidate in candidates:
            if candidate.mtime is None:
                continue
            diff = abs(log_mtime - candidate.mtime)
            if diff <= self.config.mtime_window_s and (best_id is None or diff < best_diff):
                best_id, best_diff = candidate.conversation_id, diff
        if best_id is None:
            return None
        return ConversationMatch(best_id, MatchMethod.TIMESTAMP)

    async def _sync_session(
        self,
        session: TerminalSession,
        root_pid: int,
        claimed: set[str],
        pool: list[Optional[list[ConversationCandidate]]],
    ) -> Optional[str]:
        """Update one session. Returns "linked", "cleared", or None.

        `pool` is a one-slot holder so the history is parsed at most once per sweep.
        """
        assistant_pid = await find_assistant_pid_async(root_pid, self.scan_timeout)

        if assistant_pid is None:
            if session.conversation_id:
                self.registry.update(session.window_id, conversation_id=None)
                self.manifest.set_conversation(session.window_id, None)
                claimed.discard(session.conversation_id)
                logger.info("Assistant exited in %s, cleared conversation link", session.name)
                return "cleared"
            return None

        if session.conversation_id:
            return None

        log_path = self.paths.log_path(session.multiplexer_session_id)
        if pool[0] is None:
            pool[0] = await asyncio.to_thread(self.history.candidates, None, self.config)
        found = await asyncio.to_thread(self.match, log_path, set(claimed), pool[0])
        if found is None:
            logger.debug("No conversation found for %s", session.name)
            return None

        self.registry.update(session.window_id, conversation_id=found.conversation_id)
        self.manifest.set_conversation(session.window_id, found.conversation_id)
        claimed.add(found.conversation_id)
        logger.info(
            "Linked %s to conversation %s (%s)",
            session.name,
            found.conversation_id[:8],
            found.method.value,
        )
        return "linked"

    async def sync_once(self) -> CorrelationSweepResult:
        """One correlation sweep over every live session."""
        result = CorrelationSweepResult()
        pane_pids = await tmux_bridge.get_pane_pids()
        sessions = self.registry.list()
        claimed = {s.conversation_id for s in sessions if s.conversation_id}
        pool: list[Optional[list[ConversationCandidate]]] = [None]

        for session in sessions:
            root_pid = pane_pids.get(session.multiplexer_session_id)
            if root_pid is None:
                result.unchanged += 1
                continue
            try:
                outcome = await self._sync_session(session, root_pid, claimed, pool)
            except Exception as e:  # pylint: disable=broad-exception-caught
                result.errors += 1
                logger.error("Correlation failed for %s: %s", session.window_id, e, exc_info=True)
                continue

            if outcome == "linked":
                linked = self.registry.get(session.window_id)
                if linked is not None and linked.conversation_id:
                    result.linked[session.window_id] = linked.conversation_id
            elif outcome == "cleared":
                result.cleared.append(session.window_id)
            else:
                result.unchanged += 1

        logger.debug(
            "Correlation sweep: %d linked, %d cleared, %d unchanged, %d errors",
            len(result.linked),
            len(result.cleared),
            result.unchanged,
            result.errors,
        )
        return result
