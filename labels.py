# betsync/labels.py
"""
Client-local free-text labels for bets (the question a bet is about).
Display only; never used to derive bet state.
"""
from typing import Dict, Optional

from sqlalchemy import text as sql_text
from sqlalchemy.orm import Session

from chain.models import Variant

MAX_LABEL_LENGTH = 280


def ensure_label_table(db: Session):
    db.execute(sql_text(
        "CREATE TABLE IF NOT EXISTS bet_label ("
        "network TEXT NOT NULL, variant TEXT NOT NULL, bet_id BIGINT NOT NULL, "
        "label TEXT NOT NULL, PRIMARY KEY (network, variant, bet_id))"
    ))
    db.commit()


def set_label(db: Session, network: str, variant: Variant, bet_id: int, label: str) -> str:
    label = label.strip()[:MAX_LABEL_LENGTH]
    if not label:
        db.execute(sql_text(
            "DELETE FROM bet_label WHERE network = :n AND variant = :v AND bet_id = :id"
        ), {"n": network, "v": variant.value, "id": bet_id})
    else:
        db.execute(sql_text(
            "INSERT INTO bet_label (network, variant, bet_id, label) VALUES (:n, :v, :id, :l) "
            "ON CONFLICT (network, variant, bet_id) DO UPDATE SET label = excluded.label"
        ), {"n": network, "v": variant.value, "id": bet_id, "l": label})
    db.commit()
    return label


def get_label(db: Session, network: str, variant: Variant, bet_id: int) -> Optional[str]:
    row = db.execute(sql_text(
        "SELECT label FROM bet_label WHERE network = :n AND variant = :v AND bet_id = :id"
    ), {"n": network, "v": variant.value, "id": bet_id}).fetchone()
    return row[0] if row else None


def get_labels(db: Session, network: str) -> Dict[str, str]:
    rows = db.execute(sql_text(
        "SELECT variant, bet_id, label FROM bet_label WHERE network = :n"
    ), {"n": network}).fetchall()
    return {f"{r[0]}-{r[1]}": r[2] for r in rows}
