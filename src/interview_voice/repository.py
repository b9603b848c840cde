"""SQLite-backed repository for voice consent, clone jobs and persona voices."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from .schemas.voice import (
    CloneJobStatus,
    ConsentRecord,
    Persona,
    PersonaVoiceBinding,
    StockVoice,
    VoiceCloneJob,
)

# Fixed width so stored timestamps compare correctly as strings
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Statuses that occupy a slot in the clone rate-limit window
_RESERVED_STATUSES = (CloneJobStatus.PENDING.value, CloneJobStatus.SUCCESS.value)


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _parse_timestamp(value: str | None) -> datetime | None:
    """Parse a timestamp stored in SQLite and normalize to UTC."""

    if value is None:
        return None
    try:
        return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class VoiceRepository:
    """Persist consent audits, clone jobs, persona voice bindings and stock voices."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS consent_audit (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                consent_text_version TEXT,
                attested INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS voice_clone_jobs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                sample_blob_ref TEXT,
                sample_duration_seconds INTEGER NOT NULL,
                status TEXT NOT NULL,
                external_voice_id TEXT,
                error_message TEXT,
                style_lane TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS personas (
                persona_id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                voice_provider TEXT,
                voice_type TEXT,
                voice_id TEXT,
                voice_name TEXT,
                voice_created_at TEXT,
                voice_created_by_user_id TEXT,
                voice_stability REAL NOT NULL DEFAULT 0.5,
                voice_similarity_boost REAL NOT NULL DEFAULT 0.75
            );

            CREATE TABLE IF NOT EXISTS stock_voices (
                voice_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                provider TEXT NOT NULL,
                preview_text TEXT,
                sort_order INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_voice_clone_jobs_user_created
                ON voice_clone_jobs(user_id, created_at);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Consent audit
    # ------------------------------------------------------------------

    async def add_consent(self, record: ConsentRecord) -> None:
        assert self._connection is not None
        await self._connection.execute(
            """
            INSERT INTO consent_audit (
                id, user_id, persona_id, consent_text_version, attested, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.user_id,
                record.persona_id,
                record.consent_text_version,
                int(record.attested),
                _format_timestamp(record.created_at),
            ),
        )
        await self._connection.commit()

    async def get_consent(self, consent_id: str) -> ConsentRecord | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT * FROM consent_audit WHERE id = ? LIMIT 1",
            (consent_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return ConsentRecord(
            id=row["id"],
            user_id=row["user_id"],
            persona_id=row["persona_id"],
            consent_text_version=row["consent_text_version"],
            attested=bool(row["attested"]),
            created_at=_parse_timestamp(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Voice clone jobs
    # ------------------------------------------------------------------

    async def count_clone_reservations(self, user_id: str, since: datetime) -> int:
        """Count Pending and Success jobs created by ``user_id`` at or after ``since``."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT COUNT(*) FROM voice_clone_jobs
            WHERE user_id = ? AND status IN (?, ?) AND created_at >= ?
            """,
            (user_id, *_RESERVED_STATUSES, _format_timestamp(since)),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return int(row[0]) if row is not None else 0

    async def reserve_clone_job(
        self,
        job: VoiceCloneJob,
        *,
        window_start: datetime,
        limit: int,
    ) -> bool:
        """
        Insert ``job`` only if the user still has a free slot in the window.

        The count and the insert are one statement, so two callers racing
        for the last slot cannot both succeed. Returns False when the cap
        has been reached.
        """
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            INSERT INTO voice_clone_jobs (
                id, user_id, persona_id, sample_blob_ref, sample_duration_seconds,
                status, external_voice_id, error_message, style_lane,
                created_at, updated_at
            )
            SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
            WHERE (
                SELECT COUNT(*) FROM voice_clone_jobs
                WHERE user_id = ? AND status IN (?, ?) AND created_at >= ?
            ) < ?
            """,
            (
                job.id,
                job.user_id,
                job.persona_id,
                job.sample_blob_ref,
                job.sample_duration_seconds,
                job.status.value,
                job.external_voice_id,
                job.error_message,
                job.style_lane,
                _format_timestamp(job.created_at),
                _format_timestamp(job.updated_at),
                job.user_id,
                *_RESERVED_STATUSES,
                _format_timestamp(window_start),
                limit,
            ),
        )
        inserted = cursor.rowcount
        await cursor.close()
        await self._connection.commit()
        return bool(inserted)

    async def finish_clone_job(
        self,
        job_id: str,
        status: CloneJobStatus,
        *,
        updated_at: datetime,
        external_voice_id: str | None = None,
        error_message: str | None = None,
    ) -> VoiceCloneJob:
        """Move a Pending job to its terminal status.

        Raises ``RuntimeError`` if the job does not exist or already finished.
        """
        if status is CloneJobStatus.PENDING:
            raise ValueError("A clone job can only finish as Success or Failed")

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            UPDATE voice_clone_jobs
            SET status = ?, external_voice_id = ?, error_message = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                external_voice_id,
                error_message,
                _format_timestamp(updated_at),
                job_id,
                CloneJobStatus.PENDING.value,
            ),
        )
        updated = cursor.rowcount
        await cursor.close()
        await self._connection.commit()
        if not updated:
            raise RuntimeError(f"Voice clone job {job_id} is not pending")

        job = await self.get_clone_job(job_id)
        assert job is not None
        return job

    async def get_clone_job(self, job_id: str) -> VoiceCloneJob | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT * FROM voice_clone_jobs WHERE id = ? LIMIT 1",
            (job_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return self._row_to_job(row)

    async def list_clone_jobs(self, user_id: str) -> list[VoiceCloneJob]:
        """Return every clone job for ``user_id``, oldest first."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT * FROM voice_clone_jobs
            WHERE user_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_job(row) for row in rows]

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> VoiceCloneJob:
        return VoiceCloneJob(
            id=row["id"],
            user_id=row["user_id"],
            persona_id=row["persona_id"],
            sample_blob_ref=row["sample_blob_ref"],
            sample_duration_seconds=row["sample_duration_seconds"],
            status=CloneJobStatus(row["status"]),
            external_voice_id=row["external_voice_id"],
            error_message=row["error_message"],
            style_lane=row["style_lane"],
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------

    async def upsert_persona(self, persona: Persona) -> None:
        assert self._connection is not None
        voice = persona.voice
        await self._connection.execute(
            """
            INSERT INTO personas (
                persona_id, display_name, voice_provider, voice_type, voice_id,
                voice_name, voice_created_at, voice_created_by_user_id,
                voice_stability, voice_similarity_boost
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(persona_id) DO UPDATE SET
                display_name = excluded.display_name,
                voice_provider = excluded.voice_provider,
                voice_type = excluded.voice_type,
                voice_id = excluded.voice_id,
                voice_name = excluded.voice_name,
                voice_created_at = excluded.voice_created_at,
                voice_created_by_user_id = excluded.voice_created_by_user_id,
                voice_stability = excluded.voice_stability,
                voice_similarity_boost = excluded.voice_similarity_boost
            """,
            (
                persona.persona_id,
                persona.display_name,
                voice.voice_provider,
                voice.voice_type,
                voice.voice_id,
                voice.voice_name,
                _format_timestamp(voice.voice_created_at) if voice.voice_created_at else None,
                voice.voice_created_by_user_id,
                persona.voice_stability,
                persona.voice_similarity_boost,
            ),
        )
        await self._connection.commit()

    async def get_persona(self, persona_id: str) -> Persona | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT * FROM personas WHERE persona_id = ? LIMIT 1",
            (persona_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return Persona(
            persona_id=row["persona_id"],
            display_name=row["display_name"],
            voice=PersonaVoiceBinding(
                voice_provider=row["voice_provider"],
                voice_type=row["voice_type"],
                voice_id=row["voice_id"],
                voice_name=row["voice_name"],
                voice_created_at=_parse_timestamp(row["voice_created_at"]),
                voice_created_by_user_id=row["voice_created_by_user_id"],
            ),
            voice_stability=row["voice_stability"],
            voice_similarity_boost=row["voice_similarity_boost"],
        )

    async def update_persona_voice(
        self, persona_id: str, binding: PersonaVoiceBinding
    ) -> bool:
        """Replace the voice binding on a persona. Returns False if it does not exist."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            UPDATE personas
            SET voice_provider = ?, voice_type = ?, voice_id = ?, voice_name = ?,
                voice_created_at = ?, voice_created_by_user_id = ?
            WHERE persona_id = ?
            """,
            (
                binding.voice_provider,
                binding.voice_type,
                binding.voice_id,
                binding.voice_name,
                _format_timestamp(binding.voice_created_at)
                if binding.voice_created_at
                else None,
                binding.voice_created_by_user_id,
                persona_id,
            ),
        )
        updated = cursor.rowcount
        await cursor.close()
        await self._connection.commit()
        return bool(updated)

    # ------------------------------------------------------------------
    # Stock voices
    # ------------------------------------------------------------------

    async def add_stock_voice(self, voice: StockVoice) -> None:
        assert self._connection is not None
        await self._connection.execute(
            """
            INSERT OR REPLACE INTO stock_voices (
                voice_id, name, provider, preview_text, sort_order
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (
                voice.voice_id,
                voice.name,
                voice.provider,
                voice.preview_text,
                voice.sort_order,
            ),
        )
        await self._connection.commit()

    async def list_stock_voices(self) -> list[StockVoice]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT * FROM stock_voices ORDER BY sort_order ASC, name ASC"
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_stock_voice(row) for row in rows]

    @staticmethod
    def _row_to_stock_voice(row: aiosqlite.Row) -> StockVoice:
        data: dict[str, Any] = {key: row[key] for key in row.keys()}
        return StockVoice(**data)


__all__ = ["VoiceRepository"]
