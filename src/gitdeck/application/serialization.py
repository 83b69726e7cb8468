"""
(De)serialization between domain models and the per-deck JSON document.

Deck document shape (one `<deck>/cards.json` per deck)::

    {
      "$schema": "...",                # `$` keys are reserved and skipped
      "hola": {
        "front": "¡Hola!",             # optional, defaults to the key
        "back": "hello",
        "tags": ["greeting"],
        "created": "2024-01-01T00:00:00.000Z",
        "reversible": true,
        "state": {...} | null,
        "reverseState": {...} | null,
        "suspended": false
      }
    }

Key order in the document is meaningful: it drives each card's `order`.
"""

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from gitdeck.domain.constants import RESERVED_KEY_PREFIX
from gitdeck.domain.errors import MalformedDocumentError
from gitdeck.domain.models import Card, Phase, SchedulingState

_STATE_REQUIRED = ("due", "stability", "difficulty", "reps", "lapses", "state")


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as `YYYY-MM-DDTHH:MM:SS.mmmZ` (UTC, millisecond precision)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse any ISO-8601 string into an aware UTC datetime (naive means UTC)."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def truncate_to_millis(moment: datetime) -> datetime:
    return moment.replace(microsecond=(moment.microsecond // 1000) * 1000)


def state_to_json(state: SchedulingState | None) -> dict[str, Any] | None:
    if state is None:
        return None
    data: dict[str, Any] = {
        "due": format_timestamp(state.due),
        "stability": state.stability,
        "difficulty": state.difficulty,
        "elapsed_days": state.elapsed_days,
        "scheduled_days": state.scheduled_days,
        "reps": state.reps,
        "lapses": state.lapses,
        "state": int(state.phase),
    }
    if state.last_review is not None:
        data["last_review"] = format_timestamp(state.last_review)
    return data


def state_from_json(data: dict[str, Any] | None) -> SchedulingState | None:
    """
    Build a SchedulingState from its JSON object.

    Raises:
        ValueError: a required field is missing or has the wrong type.
    """
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError(f"state must be an object or null, got {type(data).__name__}")

    missing = [k for k in _STATE_REQUIRED if k not in data]
    if missing:
        raise ValueError(f"state is missing fields: {', '.join(missing)}")

    last_review = data.get("last_review")
    return SchedulingState(
        due=parse_timestamp(str(data["due"])),
        stability=float(data["stability"]),
        difficulty=float(data["difficulty"]),
        elapsed_days=int(data.get("elapsed_days", 0)),
        scheduled_days=int(data.get("scheduled_days", 0)),
        reps=int(data["reps"]),
        lapses=int(data["lapses"]),
        phase=Phase(int(data["state"])),
        last_review=parse_timestamp(str(last_review)) if last_review else None,
    )


def card_to_entry(card: Card) -> dict[str, Any]:
    """Document entry for a card (the term is the key, not part of the value)."""
    entry: dict[str, Any] = {}
    if card.front:
        entry["front"] = card.front
    entry["back"] = card.back
    if card.tags:
        entry["tags"] = list(card.tags)
    entry["created"] = card.created
    entry["reversible"] = card.reversible
    entry["state"] = state_to_json(card.state)
    entry["reverseState"] = state_to_json(card.reverse_state)
    if card.suspended:
        entry["suspended"] = True
    return entry


def card_from_entry(deck_name: str, term: str, entry: Any, order: int) -> Card:
    if not isinstance(entry, dict):
        raise ValueError(f"card '{term}' must be an object")
    back = entry.get("back")
    if not isinstance(back, str):
        raise ValueError(f"card '{term}' has no 'back' text")

    tags = entry.get("tags") or []
    if not isinstance(tags, list):
        raise ValueError(f"card '{term}' has non-list tags")

    return Card(
        deck_name=deck_name,
        term=term,
        front=entry.get("front") or None,
        back=back,
        tags=tuple(str(t) for t in tags),
        created=str(entry.get("created", "")),
        reversible=bool(entry.get("reversible", False)),
        order=order,
        state=state_from_json(entry.get("state")),
        reverse_state=state_from_json(entry.get("reverseState")),
        suspended=bool(entry.get("suspended", False)),
    )


def load_document(deck_name: str, content: str) -> dict[str, Any]:
    """
    Parse raw document text into its key-ordered mapping.

    Raises:
        MalformedDocumentError: not JSON, or not a JSON object.
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise MalformedDocumentError(deck_name, str(e)) from e
    if not isinstance(data, dict):
        raise MalformedDocumentError(deck_name, "top level is not an object")
    return data


def parse_deck_document(deck_name: str, content: str) -> list[Card]:
    """
    Parse a deck document into cards with `order` assigned from key order.

    `order` is reassigned on every parse (0-based, reserved keys not counted).
    """
    data = load_document(deck_name, content)

    cards: list[Card] = []
    order = 0
    for term, entry in data.items():
        if term.startswith(RESERVED_KEY_PREFIX):
            continue
        try:
            cards.append(card_from_entry(deck_name, term, entry, order))
        except (ValueError, TypeError) as e:
            raise MalformedDocumentError(deck_name, str(e)) from e
        order += 1
    return cards


def merge_into_document(document: dict[str, Any], cards: Iterable[Card]) -> dict[str, Any]:
    """Overwrite (or append) the given cards in a document mapping, keyed by term."""
    merged = dict(document)
    for card in cards:
        merged[card.term] = card_to_entry(card)
    return merged


def dump_document(document: dict[str, Any]) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False)
