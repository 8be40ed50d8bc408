"""Encoding of compressed reading chunks.

A chunk holds every row of one device within one partition, sorted by
time, serialized as compact JSON and deflated with zlib.
"""

import json
import uuid
import zlib
from dataclasses import dataclass
from datetime import datetime


@dataclass
class ChunkRow:
    """One reading as stored inside a compressed chunk."""

    id: uuid.UUID
    time: datetime
    metrics: dict
    revision: int = 0
    ingested_at: datetime | None = None


def encode_chunk(rows: list[ChunkRow], level: int = 6) -> bytes:
    ordered = sorted(rows, key=lambda r: r.time)
    payload = [
        [
            row.time.isoformat(),
            row.id.hex,
            row.revision,
            row.metrics,
            row.ingested_at.isoformat() if row.ingested_at else None,
        ]
        for row in ordered
    ]
    return zlib.compress(
        json.dumps(payload, separators=(",", ":")).encode("utf-8"),
        level,
    )


def decode_chunk(payload: bytes) -> list[ChunkRow]:
    items = json.loads(zlib.decompress(payload).decode("utf-8"))
    rows = []
    for ts, row_id, revision, metrics, *rest in items:
        # Chunks written before ingest times were kept have four fields.
        ingested_at = rest[0] if rest else None
        rows.append(ChunkRow(
            id=uuid.UUID(hex=row_id),
            time=datetime.fromisoformat(ts),
            revision=revision,
            metrics=metrics,
            ingested_at=datetime.fromisoformat(ingested_at) if ingested_at else None,
        ))
    return rows
