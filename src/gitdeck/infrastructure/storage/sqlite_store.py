"""
SQLite-backed local store: cards, review log, write-ahead log and the
per-day record of introduced cards.

One `LocalDatabase` owns one connection; every adapter below shares it. All
writes commit immediately so a crash never loses an accepted review.
"""

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path

from gitdeck.application.serialization import (
    card_from_entry,
    card_to_entry,
    format_timestamp,
    parse_timestamp,
    state_from_json,
    state_to_json,
)
from gitdeck.domain.models import Card, Phase, Rating, ReviewLogEntry, SchedulingState
from gitdeck.domain.ports import (
    CardStore,
    IntroducedCardTracker,
    ReviewLogRepository,
    WalEntry,
    WriteAheadLog,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cards (
    card_id TEXT PRIMARY KEY,
    deck_name TEXT NOT NULL,
    term TEXT NOT NULL,
    ord INTEGER NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cards_deck ON cards (deck_name, ord);

CREATE TABLE IF NOT EXISTS review_logs (
    id TEXT PRIMARY KEY,
    card_id TEXT NOT NULL,
    deck_name TEXT NOT NULL,
    is_reverse INTEGER NOT NULL,
    rating INTEGER NOT NULL,
    prior_phase INTEGER NOT NULL,
    prior_state TEXT,
    reviewed_at TEXT NOT NULL,
    reviewed_ms INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_review_logs_deck ON review_logs (deck_name, reviewed_ms);

CREATE TABLE IF NOT EXISTS wal (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    deck_name TEXT NOT NULL,
    card_id TEXT NOT NULL,
    is_reverse INTEGER NOT NULL,
    state TEXT,
    UNIQUE (deck_name, card_id, is_reverse)
);

CREATE TABLE IF NOT EXISTS introduced (
    day TEXT NOT NULL,
    key TEXT NOT NULL,
    PRIMARY KEY (day, key)
);
"""


class LocalDatabase:
    """Owns the SQLite connection and schema. Use ":memory:" for throwaway stores."""

    def __init__(self, path: Path | str = ":memory:"):
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(_SCHEMA)
        self.conn.commit()
        logger.debug(f"[db] opened {path}")

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "LocalDatabase":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _dump_state(state: SchedulingState | None) -> str | None:
    data = state_to_json(state)
    return json.dumps(data) if data is not None else None


def _load_state(raw: str | None) -> SchedulingState | None:
    return state_from_json(json.loads(raw)) if raw else None


class SqliteCardStore(CardStore):
    def __init__(self, db: LocalDatabase):
        self.db = db
        self._listeners: list[Callable[[], None]] = []

    # -- queries --

    def get(self, card_id: str) -> Card | None:
        row = self.db.conn.execute(
            "SELECT * FROM cards WHERE card_id = ?", (card_id,)
        ).fetchone()
        return self._row_to_card(row) if row else None

    def get_many(self, card_ids: Iterable[str]) -> list[Card]:
        cards = []
        for card_id in dict.fromkeys(card_ids):
            card = self.get(card_id)
            if card is not None:
                cards.append(card)
        return cards

    def list_deck(self, deck_name: str) -> list[Card]:
        rows = self.db.conn.execute(
            "SELECT * FROM cards WHERE deck_name = ? ORDER BY ord", (deck_name,)
        ).fetchall()
        return [self._row_to_card(r) for r in rows]

    def list_all(self) -> list[Card]:
        rows = self.db.conn.execute("SELECT * FROM cards ORDER BY deck_name, ord").fetchall()
        return [self._row_to_card(r) for r in rows]

    def deck_names(self) -> list[str]:
        rows = self.db.conn.execute(
            "SELECT DISTINCT deck_name FROM cards ORDER BY deck_name"
        ).fetchall()
        return [r["deck_name"] for r in rows]

    # -- mutations --

    def upsert(self, card: Card) -> None:
        with self.db.conn:
            self._write(card)
        self._notify()

    def update_state(
        self, card_id: str, is_reverse: bool, state: SchedulingState | None
    ) -> Card | None:
        card = self.get(card_id)
        if card is None:
            logger.warning(f"[store] update_state for unknown card {card_id}")
            return None
        updated = card.with_state(is_reverse, state)
        self.upsert(updated)
        return updated

    def set_suspended(self, card_id: str, suspended: bool) -> Card | None:
        card = self.get(card_id)
        if card is None:
            return None
        updated = replace(card, suspended=suspended)
        self.upsert(updated)
        return updated

    def replace_all(self, cards: Iterable[Card], keep_decks: Iterable[str] = ()) -> None:
        keep = list(keep_decks)
        with self.db.conn:
            if keep:
                placeholders = ",".join("?" for _ in keep)
                self.db.conn.execute(
                    f"DELETE FROM cards WHERE deck_name NOT IN ({placeholders})", keep
                )
            else:
                self.db.conn.execute("DELETE FROM cards")
            for card in cards:
                if card.deck_name in keep:
                    continue
                self._write(card)
        self._notify()

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- helpers --

    def _write(self, card: Card) -> None:
        self.db.conn.execute(
            "INSERT OR REPLACE INTO cards (card_id, deck_name, term, ord, payload) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                card.card_id,
                card.deck_name,
                card.term,
                card.order,
                json.dumps(card_to_entry(card), ensure_ascii=False),
            ),
        )

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning(f"[store] listener failed: {e}")

    @staticmethod
    def _row_to_card(row: sqlite3.Row) -> Card:
        return card_from_entry(row["deck_name"], row["term"], json.loads(row["payload"]), row["ord"])


class SqliteReviewLog(ReviewLogRepository):
    def __init__(self, db: LocalDatabase):
        self.db = db

    def append(self, entry: ReviewLogEntry) -> None:
        with self.db.conn:
            self.db.conn.execute(
                "INSERT INTO review_logs (id, card_id, deck_name, is_reverse, rating, "
                "prior_phase, prior_state, reviewed_at, reviewed_ms) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.card_id,
                    entry.deck_name,
                    int(entry.is_reverse),
                    int(entry.rating),
                    int(entry.prior_phase),
                    _dump_state(entry.prior_state),
                    format_timestamp(entry.reviewed_at),
                    round(entry.reviewed_at.timestamp() * 1000),
                ),
            )

    def remove(self, entry_id: str) -> None:
        with self.db.conn:
            self.db.conn.execute("DELETE FROM review_logs WHERE id = ?", (entry_id,))

    def latest(self, deck_name: str) -> ReviewLogEntry | None:
        row = self.db.conn.execute(
            "SELECT * FROM review_logs WHERE deck_name = ? "
            "ORDER BY reviewed_ms DESC, rowid DESC LIMIT 1",
            (deck_name,),
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def list_deck(self, deck_name: str) -> list[ReviewLogEntry]:
        rows = self.db.conn.execute(
            "SELECT * FROM review_logs WHERE deck_name = ? ORDER BY reviewed_ms, rowid",
            (deck_name,),
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ReviewLogEntry:
        return ReviewLogEntry(
            id=row["id"],
            card_id=row["card_id"],
            deck_name=row["deck_name"],
            is_reverse=bool(row["is_reverse"]),
            rating=Rating(row["rating"]),
            prior_phase=Phase(row["prior_phase"]),
            prior_state=_load_state(row["prior_state"]),
            reviewed_at=parse_timestamp(row["reviewed_at"]),
        )


class SqliteWriteAheadLog(WriteAheadLog):
    def __init__(self, db: LocalDatabase):
        self.db = db

    def record(
        self, deck_name: str, card_id: str, is_reverse: bool, state: SchedulingState | None
    ) -> int:
        # Re-recording a direction moves it to the end of the log.
        with self.db.conn:
            self.db.conn.execute(
                "DELETE FROM wal WHERE deck_name = ? AND card_id = ? AND is_reverse = ?",
                (deck_name, card_id, int(is_reverse)),
            )
            cur = self.db.conn.execute(
                "INSERT INTO wal (deck_name, card_id, is_reverse, state) VALUES (?, ?, ?, ?)",
                (deck_name, card_id, int(is_reverse), _dump_state(state)),
            )
        seq = int(cur.lastrowid)
        logger.debug(f"[wal] recorded {card_id} reverse={is_reverse} seq={seq}")
        return seq

    def entries(self, deck_name: str | None = None) -> list[WalEntry]:
        if deck_name is None:
            rows = self.db.conn.execute("SELECT * FROM wal ORDER BY seq").fetchall()
        else:
            rows = self.db.conn.execute(
                "SELECT * FROM wal WHERE deck_name = ? ORDER BY seq", (deck_name,)
            ).fetchall()
        return [
            WalEntry(
                seq=r["seq"],
                deck_name=r["deck_name"],
                card_id=r["card_id"],
                is_reverse=bool(r["is_reverse"]),
                state=_load_state(r["state"]),
            )
            for r in rows
        ]

    def checkpoint(self) -> int:
        row = self.db.conn.execute("SELECT MAX(seq) AS seq FROM wal").fetchone()
        return int(row["seq"] or 0)

    def clear(
        self,
        deck_name: str,
        up_to: int | None = None,
        card_ids: Iterable[str] | None = None,
    ) -> int:
        query = "DELETE FROM wal WHERE deck_name = ?"
        params: list = [deck_name]
        if up_to is not None:
            query += " AND seq <= ?"
            params.append(up_to)
        if card_ids is not None:
            ids = list(card_ids)
            if not ids:
                return 0
            query += f" AND card_id IN ({','.join('?' for _ in ids)})"
            params.extend(ids)

        with self.db.conn:
            cur = self.db.conn.execute(query, params)
        if cur.rowcount:
            logger.debug(f"[wal] cleared {cur.rowcount} entries for {deck_name}")
        return cur.rowcount


class SqliteIntroducedTracker(IntroducedCardTracker):
    def __init__(self, db: LocalDatabase):
        self.db = db

    def introduced_on(self, day: str) -> set[str]:
        rows = self.db.conn.execute("SELECT key FROM introduced WHERE day = ?", (day,)).fetchall()
        return {r["key"] for r in rows}

    def mark(self, day: str, key: str) -> None:
        with self.db.conn:
            # Older days are never read again.
            self.db.conn.execute("DELETE FROM introduced WHERE day < ?", (day,))
            self.db.conn.execute(
                "INSERT OR IGNORE INTO introduced (day, key) VALUES (?, ?)", (day, key)
            )
