from __future__ import annotations

from sqlalchemy.orm import Session

from chainsignals.db.models import MetaEntry

LAST_SIGNAL_ID_SYNCED = "last_signal_id_synced"
LAST_PRICE_TS = "last_price_ts"


def get_meta(db: Session, key: str) -> str | None:
    row = db.get(MetaEntry, key)
    return row.value if row is not None else None


def get_meta_int(db: Session, key: str, default: int) -> int:
    raw = get_meta(db, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def set_meta(db: Session, key: str, value: int | str) -> None:
    row = db.get(MetaEntry, key)
    if row is None:
        db.add(MetaEntry(key=key, value=str(value)))
    else:
        row.value = str(value)
