"""Anonymous trial gating.

Visitors without an account get one timed trial. A trial record is matched
back to a visitor in three layers:

1. the persistent client session id (most reliable),
2. the device fingerprint (same device, new session),
3. the IP address, but only for trials started in the last few minutes so
   that shared or reassigned addresses don't lock out strangers.

When no server record matches but the client still carries evidence of an
earlier trial, access is blocked rather than granting a fresh one.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from typing import Any, MutableMapping

from database import get_db

logger = logging.getLogger(__name__)

TRIAL_DURATION_MS = 15 * 60 * 1000
IP_MATCH_WINDOW_MS = 5 * 60 * 1000
CREATION_WAIT_SECONDS = 0.1

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Fingerprinting
# ---------------------------------------------------------------------------

def _to_int32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


def rolling_hash(data: str) -> int:
    """32-bit ``h = h * 31 + c`` over UTF-16 code units, as browsers compute it."""
    h = 0
    raw = data.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(raw), 2):
        unit = raw[i] | (raw[i + 1] << 8)
        h = _to_int32((h << 5) - h + unit)
    return h


def to_base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


@dataclass
class FingerprintComponents:
    canvas: str = ""
    screen: str = ""  # "{width}x{height}x{colorDepth}"
    timezone: str = ""
    language: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FingerprintComponents":
        data = data or {}
        return cls(
            canvas=str(data.get("canvas", "")),
            screen=str(data.get("screen", "")),
            timezone=str(data.get("timezone", "")),
            language=str(data.get("language", "")),
        )


def device_fingerprint(components: FingerprintComponents) -> str:
    data = f"{components.canvas}-{components.screen}-{components.timezone}-{components.language}"
    return f"fp_{to_base36(abs(rolling_hash(data)))}"


def fallback_ip_id(user_agent: str, language: str, screen: str, at_ms: int | None = None) -> str:
    """Stand-in identifier for visitors whose public IP can't be resolved."""
    at_ms = now_ms() if at_ms is None else at_ms
    browser_info = f"{user_agent}-{language}-{screen}"
    return f"fallback_{to_base36(abs(rolling_hash(browser_info)))}_{to_base36(at_ms)}"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class TrialIdentity:
    session_id: str
    device_fingerprint: str
    ip_address: str
    user_agent: str = ""

    @property
    def key(self) -> str:
        return f"{self.session_id}|{self.device_fingerprint}"


@dataclass
class TrialEvidence:
    """Client-side traces of an earlier trial (local storage, session storage, cookie)."""

    current_trial_id: str = ""
    ip_fallback_id: str = ""
    trial_ever_used: bool = False
    session_trial_used: bool = False
    local_session_id: bool = False

    def has_used_trial(self) -> bool:
        # A stored session id alone is not evidence: brand new visitors get one too.
        return bool(
            self.current_trial_id
            or self.ip_fallback_id
            or self.trial_ever_used
            or self.session_trial_used
        )

    def has_local_trial_data(self) -> bool:
        return bool(self.current_trial_id or self.local_session_id)


@dataclass
class TrialRecord:
    id: str
    session_id: str
    ip_address: str
    user_agent: str
    start_time: int
    end_time: int
    is_active: bool
    device_fingerprint: str

    @classmethod
    def from_row(cls, row) -> "TrialRecord":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            start_time=int(row["start_time"]),
            end_time=int(row["end_time"]),
            is_active=bool(row["is_active"]),
            device_fingerprint=row["device_fingerprint"],
        )

    def is_live(self, at_ms: int) -> bool:
        return self.is_active and at_ms < self.end_time


@dataclass
class TrialState:
    authenticated: bool = False
    trial_start_time: int | None = None
    trial_expired: bool = False
    trial_blocked: bool = False
    time_remaining: int = TRIAL_DURATION_MS
    trial_id: str | None = None

    @property
    def is_in_trial(self) -> bool:
        return (
            not self.authenticated
            and not self.trial_expired
            and not self.trial_blocked
            and self.trial_start_time is not None
        )

    @property
    def is_access_blocked(self) -> bool:
        return not self.authenticated and (self.trial_expired or self.trial_blocked)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["is_in_trial"] = self.is_in_trial
        data["is_access_blocked"] = self.is_access_blocked
        data["formatted_time_remaining"] = format_time_remaining(self.time_remaining)
        return data


def format_time_remaining(ms: int) -> str:
    ms = max(0, int(ms))
    minutes = ms // 60000
    seconds = (ms % 60000) // 1000
    return f"{minutes}:{seconds:02d}"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class TrialStoreDB:
    """DB-backed trial records."""

    def _find(self, column: str, value: str) -> list[TrialRecord]:
        if not value:
            return []
        rows = get_db().execute(
            f"SELECT * FROM trials WHERE {column} = ? ORDER BY start_time DESC",
            (value,),
        ).fetchall()
        return [TrialRecord.from_row(r) for r in rows]

    def find_by_session(self, session_id: str) -> list[TrialRecord]:
        return self._find("session_id", session_id)

    def find_by_fingerprint(self, fingerprint: str) -> list[TrialRecord]:
        return self._find("device_fingerprint", fingerprint)

    def find_by_ip(self, ip_address: str) -> list[TrialRecord]:
        return self._find("ip_address", ip_address)

    def get(self, trial_id: str) -> TrialRecord | None:
        row = get_db().execute("SELECT * FROM trials WHERE id = ?", (trial_id,)).fetchone()
        return TrialRecord.from_row(row) if row else None

    def create(self, identity: TrialIdentity, start_time: int, end_time: int) -> TrialRecord:
        record = TrialRecord(
            id=uuid.uuid4().hex,
            session_id=identity.session_id,
            ip_address=identity.ip_address,
            user_agent=identity.user_agent,
            start_time=start_time,
            end_time=end_time,
            is_active=True,
            device_fingerprint=identity.device_fingerprint,
        )
        db = get_db()
        db.execute(
            "INSERT INTO trials (id, session_id, ip_address, user_agent, start_time, "
            "end_time, is_active, device_fingerprint) VALUES (?, ?, ?, ?, ?, ?, 1, ?)",
            (record.id, record.session_id, record.ip_address, record.user_agent,
             record.start_time, record.end_time, record.device_fingerprint),
        )
        db.commit()
        return record

    def deactivate(self, trial_id: str) -> None:
        db = get_db()
        db.execute("UPDATE trials SET is_active = 0 WHERE id = ?", (trial_id,))
        db.commit()

    def deactivate_expired(self, at_ms: int) -> int:
        db = get_db()
        cur = db.execute(
            "UPDATE trials SET is_active = 0 WHERE is_active = 1 AND end_time <= ?",
            (at_ms,),
        )
        db.commit()
        return cur.rowcount

    def all(self) -> list[TrialRecord]:
        rows = get_db().execute("SELECT * FROM trials ORDER BY start_time DESC").fetchall()
        return [TrialRecord.from_row(r) for r in rows]

    def delete_many(self, trial_ids: list[str]) -> int:
        if not trial_ids:
            return 0
        db = get_db()
        deleted = 0
        for trial_id in trial_ids:
            deleted += db.execute("DELETE FROM trials WHERE id = ?", (trial_id,)).rowcount
        db.commit()
        return deleted


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

class TrialService:
    """Decides whether an anonymous visitor may use the app right now."""

    _creating: set[str] = set()
    _creating_lock = threading.Lock()

    def __init__(
        self,
        store: TrialStoreDB | None = None,
        duration_ms: int = TRIAL_DURATION_MS,
        ip_window_ms: int = IP_MATCH_WINDOW_MS,
    ):
        self.store = store or TrialStoreDB()
        self.duration_ms = duration_ms
        self.ip_window_ms = ip_window_ms

    def check_existing_trial(self, identity: TrialIdentity, at_ms: int | None = None) -> TrialRecord | None:
        """Layered lookup: session id, then fingerprint, then recent trials from the same IP."""
        at_ms = now_ms() if at_ms is None else at_ms
        try:
            for trial in self.store.find_by_session(identity.session_id):
                if trial.is_live(at_ms):
                    return trial

            for trial in self.store.find_by_fingerprint(identity.device_fingerprint):
                if trial.is_live(at_ms):
                    return trial

            cutoff = at_ms - self.ip_window_ms
            for trial in self.store.find_by_ip(identity.ip_address):
                if trial.is_live(at_ms) and trial.start_time > cutoff:
                    return trial
        except sqlite3.Error:
            logger.exception("Trial lookup failed")
            return None
        return None

    def create_trial(self, identity: TrialIdentity, at_ms: int | None = None) -> TrialRecord | None:
        """Create a trial unless one already exists or is being created for this identity."""
        at_ms = now_ms() if at_ms is None else at_ms

        with self._creating_lock:
            in_flight = identity.key in self._creating
        if in_flight:
            time.sleep(CREATION_WAIT_SECONDS)
            existing = self.check_existing_trial(identity, at_ms)
            if existing:
                return existing

        with self._creating_lock:
            self._creating.add(identity.key)
        try:
            existing = self.check_existing_trial(identity, at_ms)
            if existing:
                return existing
            record = self.store.create(identity, at_ms, at_ms + self.duration_ms)
            logger.info("Trial started: id=%s fingerprint=%s", record.id, identity.device_fingerprint)
            return record
        except sqlite3.Error:
            logger.exception("Trial creation failed")
            return None
        finally:
            with self._creating_lock:
                self._creating.discard(identity.key)

    def expire_trial(self, trial_id: str) -> None:
        try:
            self.store.deactivate(trial_id)
        except sqlite3.Error:
            logger.exception("Failed to expire trial %s", trial_id)

    def _blocked(self) -> TrialState:
        return TrialState(trial_expired=True, trial_blocked=True, time_remaining=0)

    def initialize(
        self,
        identity: TrialIdentity,
        authenticated: bool,
        evidence: TrialEvidence,
        at_ms: int | None = None,
    ) -> TrialState:
        at_ms = now_ms() if at_ms is None else at_ms

        if authenticated:
            return TrialState(authenticated=True, time_remaining=self.duration_ms)

        try:
            existing = self.check_existing_trial(identity, at_ms)
            if existing:
                elapsed = at_ms - existing.start_time
                if elapsed >= self.duration_ms:
                    self.expire_trial(existing.id)
                    return self._blocked()
                return TrialState(
                    trial_start_time=existing.start_time,
                    time_remaining=self.duration_ms - elapsed,
                    trial_id=existing.id,
                )

            if evidence.has_used_trial():
                logger.info("Trial refused: prior-use evidence, fingerprint=%s", identity.device_fingerprint)
                return self._blocked()

            created = self.create_trial(identity, at_ms)
            if created is None:
                return self._blocked()
            return TrialState(
                trial_start_time=created.start_time,
                time_remaining=self.duration_ms - (at_ms - created.start_time),
                trial_id=created.id,
            )
        except Exception:
            logger.exception("Trial initialization failed")
            if evidence.has_local_trial_data():
                return self._blocked()
            # Unpersisted grace trial for first-time visitors during an outage.
            return TrialState(trial_start_time=at_ms, time_remaining=self.duration_ms)

    def tick(self, state: TrialState, at_ms: int | None = None) -> TrialState:
        """Advance the countdown; expires the stored trial once time runs out."""
        if state.trial_expired or state.authenticated or state.trial_start_time is None:
            return state
        at_ms = now_ms() if at_ms is None else at_ms
        remaining = self.duration_ms - (at_ms - state.trial_start_time)
        if remaining > 0:
            return replace(state, time_remaining=remaining)
        if state.trial_id:
            self.expire_trial(state.trial_id)
        return replace(state, trial_expired=True, trial_blocked=True, time_remaining=0, trial_id=None)


# ---------------------------------------------------------------------------
# Simple countdown (start time kept in the visitor's session)
# ---------------------------------------------------------------------------

@dataclass
class TrialTimer:
    storage: MutableMapping[str, Any]
    duration_ms: int = TRIAL_DURATION_MS
    key: str = field(default="trialStartTime")

    def status(self, authenticated: bool, at_ms: int | None = None) -> dict[str, Any]:
        if authenticated:
            return {
                "trial_expired": False,
                "time_remaining": self.duration_ms,
                "is_in_trial": False,
                "formatted_time_remaining": format_time_remaining(self.duration_ms),
            }
        at_ms = now_ms() if at_ms is None else at_ms
        start = self.storage.get(self.key)
        if start is None:
            start = at_ms
            self.storage[self.key] = start
        remaining = self.duration_ms - (at_ms - int(start))
        expired = remaining <= 0
        return {
            "trial_expired": expired,
            "time_remaining": 0 if expired else remaining,
            "is_in_trial": not expired,
            "formatted_time_remaining": format_time_remaining(max(0, remaining)),
        }

    def reset(self) -> None:
        self.storage.pop(self.key, None)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

CLEANUP_MODES = ("expired", "duplicates", "all")


def select_trials_for_cleanup(trials: list[TrialRecord], mode: str, at_ms: int) -> list[TrialRecord]:
    if mode == "all":
        return list(trials)
    if mode == "expired":
        return [t for t in trials if not t.is_active or at_ms >= t.end_time]
    if mode == "duplicates":
        groups: dict[str, list[TrialRecord]] = {}
        for t in trials:
            groups.setdefault(f"{t.session_id}-{t.device_fingerprint}", []).append(t)
        doomed: list[TrialRecord] = []
        for group in groups.values():
            if len(group) > 1:
                group.sort(key=lambda t: t.start_time, reverse=True)
                doomed.extend(group[1:])
        return doomed
    raise ValueError(f"Unknown cleanup mode: {mode}")


def cleanup_trials(mode: str, at_ms: int | None = None, dry_run: bool = False) -> list[TrialRecord]:
    """Delete trials selected by ``mode``. Returns the selected records."""
    at_ms = now_ms() if at_ms is None else at_ms
    store = TrialStoreDB()
    doomed = select_trials_for_cleanup(store.all(), mode, at_ms)
    if not dry_run:
        store.delete_many([t.id for t in doomed])
        logger.info("Trial cleanup (%s): deleted %d", mode, len(doomed))
    return doomed


def trial_stats(at_ms: int | None = None) -> dict[str, int]:
    at_ms = now_ms() if at_ms is None else at_ms
    trials = TrialStoreDB().all()
    active = sum(1 for t in trials if t.is_live(at_ms))
    return {"total": len(trials), "active": active, "expired": len(trials) - active}
