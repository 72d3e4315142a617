from __future__ import annotations

import json
import logging
import math
import os
import sqlite3
import tempfile
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso, parse_iso_datetime

from jobboard.models import (
    PASSIVE_APPLICATION_STATUSES,
    Application,
    CleanupResult,
    JobPreferences,
    JobSearchFilters,
    JobStatsResponse,
    NormalizedJob,
    Pagination,
    ProviderRunHistoryItem,
    ProviderRunResult,
    ProviderState,
    RecommendationRun,
    SearchResultJob,
    SourceStats,
    StoredJob,
    UniversityJobStats,
    UpsertSummary,
    User,
    UserUpsertRequest,
    VisaSponsorship,
)

LOGGER = logging.getLogger("jobharbor.repository")

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "jobharbor", "jobboard.sqlite3")
SEARCH_DESCRIPTION_LIMIT = 500
UNIVERSITY_SOURCES = ("HANDSHAKE", "HANDSHAKE-MOCK", "UNIVERSITY")
UNIVERSITY_TITLE_PATTERNS = (
    "%intern%",
    "%entry level%",
    "%entry-level%",
    "%new grad%",
    "%graduate%",
    "%junior%",
)

JOB_COLUMNS = """
    id,
    source,
    source_job_id,
    title,
    company,
    location,
    description,
    requirements_json,
    employment_type,
    experience_level,
    remote,
    salary_min,
    salary_max,
    salary_currency,
    visa_h1b,
    visa_opt,
    visa_stem_opt,
    source_url,
    application_url,
    is_university_job,
    university_name,
    is_campus_exclusive,
    posted_date,
    expiry_date,
    company_logo,
    company_website,
    skills_json,
    industry_tags_json,
    views,
    applications,
    is_active,
    is_featured,
    created_at,
    updated_at,
    last_refreshed
"""


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _like_pattern(value: str) -> str:
    return f"%{escape_like(value.lower())}%"


def truncate_description(text: str, limit: int = SEARCH_DESCRIPTION_LIMIT) -> str:
    return text[:limit]


def build_pagination(total: int, page: int, limit: int) -> Pagination:
    return Pagination(
        current_page=page,
        total_pages=math.ceil(total / limit) if limit else 0,
        total_jobs=total,
        jobs_per_page=limit,
    )


class JobRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    source TEXT NOT NULL,
                    source_job_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    company TEXT NOT NULL,
                    location TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    requirements_json TEXT NOT NULL DEFAULT '[]',
                    employment_type TEXT NOT NULL DEFAULT 'FULL_TIME',
                    experience_level TEXT NOT NULL DEFAULT 'MID',
                    remote INTEGER NOT NULL DEFAULT 0,
                    salary_min REAL,
                    salary_max REAL,
                    salary_currency TEXT NOT NULL DEFAULT 'USD',
                    visa_h1b INTEGER NOT NULL DEFAULT 0,
                    visa_opt INTEGER NOT NULL DEFAULT 0,
                    visa_stem_opt INTEGER NOT NULL DEFAULT 0,
                    source_url TEXT,
                    application_url TEXT,
                    is_university_job INTEGER NOT NULL DEFAULT 0,
                    university_name TEXT,
                    is_campus_exclusive INTEGER NOT NULL DEFAULT 0,
                    posted_date TEXT NOT NULL,
                    expiry_date TEXT,
                    company_logo TEXT,
                    company_website TEXT,
                    skills_json TEXT NOT NULL DEFAULT '[]',
                    industry_tags_json TEXT NOT NULL DEFAULT '[]',
                    views INTEGER NOT NULL DEFAULT 0,
                    applications INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    is_featured INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_refreshed TEXT NOT NULL,
                    UNIQUE (source, source_job_id)
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_active_posted
                    ON jobs (is_active, posted_date DESC);
                CREATE INDEX IF NOT EXISTS idx_jobs_employment_type ON jobs (employment_type);
                CREATE INDEX IF NOT EXISTS idx_jobs_visa ON jobs (visa_h1b, visa_opt, visa_stem_opt);

                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT,
                    visa_type TEXT,
                    university TEXT,
                    major TEXT,
                    graduation_year INTEGER,
                    skills_json TEXT NOT NULL DEFAULT '[]',
                    preferences_json TEXT NOT NULL DEFAULT '{}',
                    bookmarked_jobs_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS applications (
                    user_id TEXT NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, job_id)
                );

                CREATE TABLE IF NOT EXISTS recommendation_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    generated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS recommendation_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER NOT NULL REFERENCES recommendation_runs(id) ON DELETE CASCADE,
                    job_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    match_score INTEGER NOT NULL,
                    rank INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS provider_state (
                    source TEXT PRIMARY KEY,
                    last_run_at TEXT,
                    last_success_at TEXT,
                    last_status TEXT,
                    last_error TEXT,
                    next_eligible_run_at TEXT,
                    consecutive_failures INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS aggregation_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    trigger TEXT NOT NULL,
                    respect_backoff INTEGER NOT NULL DEFAULT 0,
                    requested_sources INTEGER NOT NULL DEFAULT 0,
                    successful_sources INTEGER NOT NULL DEFAULT 0,
                    failed_sources INTEGER NOT NULL DEFAULT 0,
                    skipped_sources INTEGER NOT NULL DEFAULT 0,
                    total_fetched INTEGER NOT NULL DEFAULT 0,
                    total_inserted INTEGER NOT NULL DEFAULT 0,
                    total_updated INTEGER NOT NULL DEFAULT 0,
                    total_failed INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS provider_run_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER REFERENCES aggregation_runs(id) ON DELETE SET NULL,
                    source TEXT NOT NULL,
                    ran_at TEXT NOT NULL,
                    trigger TEXT NOT NULL,
                    status TEXT NOT NULL,
                    fetched INTEGER NOT NULL,
                    inserted INTEGER NOT NULL,
                    updated INTEGER NOT NULL,
                    failed INTEGER NOT NULL,
                    attempt_number INTEGER NOT NULL,
                    backoff_seconds INTEGER NOT NULL,
                    next_eligible_run_at TEXT,
                    respect_backoff INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    duration_ms REAL NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS cleanup_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ran_at TEXT NOT NULL,
                    trigger TEXT NOT NULL,
                    max_age_days INTEGER NOT NULL,
                    retention_days INTEGER,
                    deactivated INTEGER NOT NULL,
                    deleted INTEGER NOT NULL
                );
                """
            )
            self._ensure_jobs_columns()
            self._ensure_users_columns()
            self._connection.commit()

    def _ensure_jobs_columns(self) -> None:
        column_rows = self.connection.execute("PRAGMA table_info(jobs)").fetchall()
        existing = {row["name"] for row in column_rows}
        required_definitions = {
            "requirements_json": "TEXT NOT NULL DEFAULT '[]'",
            "company_logo": "TEXT",
            "company_website": "TEXT",
            "industry_tags_json": "TEXT NOT NULL DEFAULT '[]'",
            "is_featured": "INTEGER NOT NULL DEFAULT 0",
            "last_refreshed": "TEXT NOT NULL DEFAULT ''",
        }
        for column_name, definition in required_definitions.items():
            if column_name in existing:
                continue
            self.connection.execute(f"ALTER TABLE jobs ADD COLUMN {column_name} {definition}")

    def _ensure_users_columns(self) -> None:
        column_rows = self.connection.execute("PRAGMA table_info(users)").fetchall()
        existing = {row["name"] for row in column_rows}
        required_definitions = {
            "email": "TEXT",
            "graduation_year": "INTEGER",
            "bookmarked_jobs_json": "TEXT NOT NULL DEFAULT '[]'",
        }
        for column_name, definition in required_definitions.items():
            if column_name in existing:
                continue
            self.connection.execute(f"ALTER TABLE users ADD COLUMN {column_name} {definition}")

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def ping(self) -> bool:
        with self._lock:
            try:
                self.connection.execute("SELECT 1").fetchone()
            except (sqlite3.Error, RuntimeError):
                return False
            return True

    # Jobs

    def upsert_jobs(self, jobs: list[NormalizedJob]) -> UpsertSummary:
        """Insert or merge jobs keyed by (source, source_job_id).

        Each job is written on its own; a failing row is logged and counted
        without aborting the rest of the batch.
        """
        summary = UpsertSummary()
        with self._lock:
            for job in jobs:
                try:
                    job_id, inserted = self._upsert_job(job)
                except sqlite3.Error as exc:
                    summary.failed += 1
                    LOGGER.warning(
                        json.dumps(
                            {
                                "event": "job_upsert_failed",
                                "source": job.source,
                                "source_job_id": job.source_job_id,
                                "error": str(exc),
                            }
                        )
                    )
                    continue
                summary.job_ids.append(job_id)
                if inserted:
                    summary.inserted += 1
                else:
                    summary.updated += 1
            self.connection.commit()
        return summary

    def _upsert_job(self, job: NormalizedJob) -> tuple[str, bool]:
        now = now_utc_iso()
        visa = job.visa_sponsorship or VisaSponsorship()
        existing = self.connection.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE source = ? AND source_job_id = ?",
            (job.source, job.source_job_id),
        ).fetchone()

        if existing is None:
            job_id = uuid.uuid4().hex
            self.connection.execute(
                f"""
                INSERT INTO jobs ({JOB_COLUMNS})
                VALUES ({", ".join("?" for _ in range(35))})
                """,
                (
                    job_id,
                    job.source,
                    job.source_job_id,
                    job.title,
                    job.company,
                    job.location,
                    job.description,
                    json.dumps(job.requirements),
                    job.employment_type,
                    job.experience_level,
                    int(job.remote),
                    job.salary_min,
                    job.salary_max,
                    job.salary_currency,
                    int(visa.h1b),
                    int(visa.opt),
                    int(visa.stem_opt),
                    job.source_url,
                    job.application_url,
                    int(job.is_university_job),
                    job.university_name,
                    int(job.is_campus_exclusive),
                    job.posted_date or now,
                    job.expiry_date,
                    job.company_logo,
                    job.company_website,
                    json.dumps(job.skills_required),
                    json.dumps(job.industry_tags),
                    0,
                    0,
                    1,
                    int(job.is_featured),
                    now,
                    now,
                    now,
                ),
            )
            return job_id, True

        current = self._to_job(existing)
        self.connection.execute(
            """
            UPDATE jobs
            SET
                title = ?,
                company = ?,
                location = ?,
                description = ?,
                requirements_json = ?,
                employment_type = ?,
                experience_level = ?,
                remote = ?,
                salary_min = ?,
                salary_max = ?,
                salary_currency = ?,
                visa_h1b = ?,
                visa_opt = ?,
                visa_stem_opt = ?,
                source_url = ?,
                application_url = ?,
                is_university_job = ?,
                university_name = ?,
                is_campus_exclusive = ?,
                posted_date = ?,
                expiry_date = ?,
                company_logo = ?,
                company_website = ?,
                skills_json = ?,
                industry_tags_json = ?,
                is_active = 1,
                is_featured = ?,
                updated_at = ?,
                last_refreshed = ?
            WHERE id = ?
            """,
            (
                job.title,
                job.company,
                job.location,
                job.description or current.description,
                json.dumps(job.requirements or current.requirements),
                job.employment_type,
                job.experience_level,
                int(job.remote),
                job.salary_min if job.salary_min is not None else current.salary_min,
                job.salary_max if job.salary_max is not None else current.salary_max,
                job.salary_currency,
                int(visa.h1b),
                int(visa.opt),
                int(visa.stem_opt),
                job.source_url or current.source_url,
                job.application_url or current.application_url,
                int(job.is_university_job or current.is_university_job),
                job.university_name or current.university_name,
                int(job.is_campus_exclusive),
                job.posted_date or current.posted_date,
                job.expiry_date or current.expiry_date,
                job.company_logo or current.company_logo,
                job.company_website or current.company_website,
                json.dumps(job.skills_required or current.skills_required),
                json.dumps(job.industry_tags or current.industry_tags),
                int(job.is_featured or current.is_featured),
                now,
                now,
                current.id,
            ),
        )
        return current.id, False

    def get_job(self, job_id: str) -> StoredJob | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_job(row)

    def get_job_or_raise(self, job_id: str) -> StoredJob:
        job = self.get_job(job_id)
        if job is None:
            raise KeyError(f"Unknown job_id: {job_id}")
        return job

    def get_jobs(self, job_ids: list[str]) -> list[StoredJob]:
        """Return jobs in the order of ``job_ids``, skipping ids that no longer exist."""
        if not job_ids:
            return []
        with self._lock:
            placeholders = ", ".join("?" for _ in job_ids)
            rows = self.connection.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE id IN ({placeholders})",
                tuple(job_ids),
            ).fetchall()
            by_id = {row["id"]: self._to_job(row) for row in rows}
            return [by_id[job_id] for job_id in job_ids if job_id in by_id]

    def record_job_view(self, job_id: str) -> StoredJob:
        with self._lock:
            cursor = self.connection.execute(
                "UPDATE jobs SET views = views + 1 WHERE id = ?",
                (job_id,),
            )
            self.connection.commit()
            if cursor.rowcount == 0:
                raise KeyError(f"Unknown job_id: {job_id}")
            return self.get_job_or_raise(job_id)

    def list_active_jobs(
        self,
        *,
        limit: int | None = None,
        posted_after: str | None = None,
        source: str | None = None,
    ) -> list[StoredJob]:
        with self._lock:
            query = f"SELECT {JOB_COLUMNS} FROM jobs WHERE is_active = 1"
            params: list[Any] = []
            if posted_after:
                query += " AND posted_date >= ?"
                params.append(posted_after)
            if source:
                query += " AND source = ?"
                params.append(source.upper())
            query += " ORDER BY posted_date DESC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [self._to_job(row) for row in cursor.fetchall()]

    def update_visa_sponsorship(self, job_id: str, visa: VisaSponsorship) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE jobs
                SET visa_h1b = ?, visa_opt = ?, visa_stem_opt = ?, updated_at = ?
                WHERE id = ?
                """,
                (int(visa.h1b), int(visa.opt), int(visa.stem_opt), now_utc_iso(), job_id),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def search_jobs(
        self,
        filters: JobSearchFilters,
        *,
        page: int,
        limit: int,
    ) -> tuple[list[SearchResultJob], Pagination]:
        where = ["is_active = 1"]
        params: list[Any] = []
        score_sql = "0"
        score_params: list[Any] = []

        terms = [term for term in (filters.keywords or "").lower().split() if term]
        if terms:
            term_clauses: list[str] = []
            score_parts: list[str] = []
            for term in terms:
                pattern = _like_pattern(term)
                term_clauses.append(
                    "(lower(title) LIKE ? ESCAPE '\\' OR lower(company) LIKE ? ESCAPE '\\' "
                    "OR lower(description) LIKE ? ESCAPE '\\')"
                )
                params.extend([pattern, pattern, pattern])
                score_parts.append(
                    "(CASE WHEN lower(title) LIKE ? ESCAPE '\\' THEN 10 ELSE 0 END"
                    " + CASE WHEN lower(company) LIKE ? ESCAPE '\\' THEN 3 ELSE 0 END"
                    " + CASE WHEN lower(description) LIKE ? ESCAPE '\\' THEN 1 ELSE 0 END)"
                )
                score_params.extend([pattern, pattern, pattern])
            where.append("(" + " OR ".join(term_clauses) + ")")
            score_sql = " + ".join(score_parts)

        if filters.location:
            where.append("lower(location) LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(filters.location.strip()))
        if filters.remote is not None:
            where.append("remote = ?")
            params.append(int(filters.remote))
        for column, flag in (
            ("visa_h1b", filters.h1b),
            ("visa_opt", filters.opt),
            ("visa_stem_opt", filters.stem_opt),
        ):
            if flag is not None:
                where.append(f"{column} = ?")
                params.append(int(flag))
        if filters.employment_type:
            where.append("employment_type = ?")
            params.append(filters.employment_type.strip().upper())
        if filters.experience_level:
            where.append("experience_level = ?")
            params.append(filters.experience_level.strip().upper())
        if filters.source:
            where.append("source = ?")
            params.append(filters.source.strip().upper())
        skills = [skill.strip().lower() for skill in filters.skills if skill.strip()]
        if skills:
            placeholders = ", ".join("?" for _ in skills)
            where.append(
                "EXISTS (SELECT 1 FROM json_each(jobs.skills_json) AS skill "
                f"WHERE lower(skill.value) IN ({placeholders}))"
            )
            params.extend(skills)
        if filters.salary_min is not None:
            where.append("COALESCE(salary_max, salary_min) >= ?")
            params.append(filters.salary_min)
        if filters.posted_within_days is not None:
            cutoff = datetime.fromisoformat(now_utc_iso()) - timedelta(
                days=filters.posted_within_days
            )
            where.append("posted_date >= ?")
            params.append(cutoff.isoformat())

        where_sql = " AND ".join(where)
        with self._lock:
            total = int(
                self.connection.execute(
                    f"SELECT COUNT(1) AS c FROM jobs WHERE {where_sql}",
                    tuple(params),
                ).fetchone()["c"]
            )
            rows = self.connection.execute(
                f"""
                SELECT {JOB_COLUMNS}, ({score_sql}) AS search_score
                FROM jobs
                WHERE {where_sql}
                ORDER BY search_score DESC, posted_date DESC
                LIMIT ? OFFSET ?
                """,
                tuple(score_params + params + [limit, (page - 1) * limit]),
            ).fetchall()

        results: list[SearchResultJob] = []
        for row in rows:
            job = self._to_job(row)
            payload = job.model_dump()
            payload["description"] = truncate_description(job.description)
            results.append(
                SearchResultJob(
                    **payload,
                    full_description=job.description,
                    search_score=float(row["search_score"] or 0),
                )
            )
        return results, build_pagination(total, page, limit)

    def list_university_jobs(
        self,
        *,
        keywords: str | None,
        location: str | None,
        employment_type: str | None,
        page: int,
        limit: int,
    ) -> tuple[list[StoredJob], Pagination, UniversityJobStats]:
        source_placeholders = ", ".join("?" for _ in UNIVERSITY_SOURCES)
        title_clauses = " OR ".join("lower(title) LIKE ?" for _ in UNIVERSITY_TITLE_PATTERNS)
        where = [
            "is_active = 1",
            f"""(
                source IN ({source_placeholders})
                OR is_university_job = 1
                OR employment_type = 'INTERNSHIP'
                OR experience_level = 'ENTRY'
                OR is_campus_exclusive = 1
                OR {title_clauses}
            )""",
        ]
        params: list[Any] = [*UNIVERSITY_SOURCES, *UNIVERSITY_TITLE_PATTERNS]
        for term in (keywords or "").lower().split():
            where.append(
                "(lower(title) LIKE ? ESCAPE '\\' OR lower(company) LIKE ? ESCAPE '\\' "
                "OR lower(description) LIKE ? ESCAPE '\\')"
            )
            pattern = _like_pattern(term)
            params.extend([pattern, pattern, pattern])
        if location:
            where.append("lower(location) LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(location.strip()))
        if employment_type:
            where.append("employment_type = ?")
            params.append(employment_type.strip().upper())

        where_sql = " AND ".join(where)
        with self._lock:
            stats_row = self.connection.execute(
                f"""
                SELECT
                    COUNT(1) AS total,
                    COALESCE(SUM(CASE WHEN source LIKE 'HANDSHAKE%' THEN 1 ELSE 0 END), 0)
                        AS handshake,
                    COALESCE(SUM(CASE WHEN source LIKE 'LINKEDIN%' THEN 1 ELSE 0 END), 0)
                        AS linkedin
                FROM jobs
                WHERE {where_sql}
                """,
                tuple(params),
            ).fetchone()
            rows = self.connection.execute(
                f"""
                SELECT {JOB_COLUMNS}
                FROM jobs
                WHERE {where_sql}
                ORDER BY posted_date DESC
                LIMIT ? OFFSET ?
                """,
                tuple(params + [limit, (page - 1) * limit]),
            ).fetchall()

        total = int(stats_row["total"])
        handshake = int(stats_row["handshake"])
        linkedin = int(stats_row["linkedin"])
        stats = UniversityJobStats(
            handshake=handshake,
            linkedin=linkedin,
            other=total - handshake - linkedin,
        )
        jobs = [self._to_job(row) for row in rows]
        return jobs, build_pagination(total, page, limit), stats

    def job_stats(self) -> JobStatsResponse:
        with self._lock:
            totals = self.connection.execute(
                """
                SELECT
                    COUNT(1) AS total_jobs,
                    COALESCE(SUM(is_active), 0) AS active_jobs
                FROM jobs
                """
            ).fetchone()
            rows = self.connection.execute(
                """
                SELECT
                    source,
                    COUNT(1) AS count,
                    SUM(is_active) AS active_count,
                    SUM(CASE WHEN is_active = 1 AND visa_h1b = 1 THEN 1 ELSE 0 END) AS h1b_count,
                    SUM(CASE WHEN is_active = 1 AND visa_opt = 1 THEN 1 ELSE 0 END) AS opt_count,
                    SUM(CASE WHEN is_active = 1 AND remote = 1 THEN 1 ELSE 0 END) AS remote_count
                FROM jobs
                GROUP BY source
                ORDER BY count DESC, source
                """
            ).fetchall()
        return JobStatsResponse(
            total_jobs=int(totals["total_jobs"]),
            active_jobs=int(totals["active_jobs"]),
            by_source=[SourceStats(**dict(row)) for row in rows],
        )

    def count_jobs(self) -> tuple[int, int]:
        with self._lock:
            row = self.connection.execute(
                "SELECT COUNT(1) AS total, COALESCE(SUM(is_active), 0) AS active FROM jobs"
            ).fetchone()
            return int(row["total"]), int(row["active"])

    # Cleanup

    def deactivate_stale_jobs(self, cutoff_iso: str) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE jobs
                SET is_active = 0, updated_at = ?
                WHERE is_active = 1 AND posted_date < ?
                """,
                (now_utc_iso(), cutoff_iso),
            )
            self.connection.commit()
            return cursor.rowcount

    def delete_expired_inactive_jobs(self, cutoff_iso: str) -> int:
        """Delete inactive jobs not refreshed since ``cutoff_iso``.

        Jobs that a user bookmarked or tracks as an application are kept.
        """
        with self._lock:
            cursor = self.connection.execute(
                """
                DELETE FROM jobs
                WHERE is_active = 0
                  AND last_refreshed < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM applications a WHERE a.job_id = jobs.id
                  )
                  AND NOT EXISTS (
                      SELECT 1
                      FROM users u, json_each(u.bookmarked_jobs_json) AS bookmark
                      WHERE bookmark.value = jobs.id
                  )
                """,
                (cutoff_iso,),
            )
            self.connection.commit()
            return cursor.rowcount

    def record_cleanup_run(
        self,
        *,
        ran_at: str,
        trigger: str,
        max_age_days: int,
        retention_days: int | None,
        deactivated: int,
        deleted: int,
    ) -> CleanupResult:
        with self._lock:
            cursor = self.connection.execute(
                """
                INSERT INTO cleanup_runs (
                    ran_at,
                    trigger,
                    max_age_days,
                    retention_days,
                    deactivated,
                    deleted
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (ran_at, trigger, max_age_days, retention_days, deactivated, deleted),
            )
            self.connection.commit()
            return CleanupResult(
                run_id=int(cursor.lastrowid),
                ran_at=ran_at,
                trigger=trigger,  # type: ignore[arg-type]
                max_age_days=max_age_days,
                retention_days=retention_days,
                deactivated=deactivated,
                deleted=deleted,
            )

    def last_cleanup_run(self) -> CleanupResult | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    id AS run_id,
                    ran_at,
                    trigger,
                    max_age_days,
                    retention_days,
                    deactivated,
                    deleted
                FROM cleanup_runs
                ORDER BY id DESC
                LIMIT 1
                """
            ).fetchone()
            if row is None:
                return None
            return CleanupResult(**dict(row))

    def cleanup_counts(self, cutoff_iso: str) -> dict[str, Any]:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    COUNT(1) AS total_jobs,
                    COALESCE(SUM(is_active), 0) AS active_jobs,
                    COALESCE(SUM(CASE WHEN is_active = 1 AND posted_date < ? THEN 1 ELSE 0 END), 0)
                        AS stale_active_jobs,
                    MIN(CASE WHEN is_active = 1 THEN posted_date END) AS oldest_active_posted_date
                FROM jobs
                """,
                (cutoff_iso,),
            ).fetchone()
            return dict(row)

    # Users and bookmarks

    def upsert_user(self, payload: UserUpsertRequest) -> User:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO users (
                    user_id,
                    name,
                    email,
                    visa_type,
                    university,
                    major,
                    graduation_year,
                    skills_json,
                    preferences_json,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    name = excluded.name,
                    email = excluded.email,
                    visa_type = excluded.visa_type,
                    university = excluded.university,
                    major = excluded.major,
                    graduation_year = excluded.graduation_year,
                    skills_json = excluded.skills_json,
                    preferences_json = excluded.preferences_json,
                    updated_at = excluded.updated_at
                """,
                (
                    payload.user_id,
                    payload.name,
                    payload.email,
                    payload.visa_type,
                    payload.university,
                    payload.major,
                    payload.graduation_year,
                    json.dumps(payload.skills),
                    payload.job_preferences.model_dump_json(),
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_user_or_raise(payload.user_id)

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    user_id,
                    name,
                    email,
                    visa_type,
                    university,
                    major,
                    graduation_year,
                    skills_json,
                    preferences_json,
                    bookmarked_jobs_json,
                    created_at,
                    updated_at
                FROM users
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_user(row)

    def get_user_or_raise(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise KeyError(f"Unknown user_id: {user_id}")
        return user

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
            self.connection.execute("DELETE FROM recommendation_runs WHERE user_id = ?", (user_id,))
            self.connection.commit()
            return cursor.rowcount > 0

    def _save_bookmarks(self, user_id: str, bookmarks: list[str]) -> None:
        self.connection.execute(
            "UPDATE users SET bookmarked_jobs_json = ?, updated_at = ? WHERE user_id = ?",
            (json.dumps(bookmarks), now_utc_iso(), user_id),
        )
        self.connection.commit()

    def toggle_bookmark(self, user_id: str, job_id: str) -> tuple[bool, int]:
        with self._lock:
            user = self.get_user_or_raise(user_id)
            bookmarks = list(user.bookmarked_jobs)
            if job_id in bookmarks:
                bookmarks.remove(job_id)
                bookmarked = False
            else:
                self.get_job_or_raise(job_id)
                bookmarks.append(job_id)
                bookmarked = True
            self._save_bookmarks(user_id, bookmarks)
            return bookmarked, len(bookmarks)

    def remove_bookmarks(self, user_id: str, job_ids: list[str]) -> tuple[int, int]:
        with self._lock:
            user = self.get_user_or_raise(user_id)
            to_remove = set(job_ids)
            remaining = [job_id for job_id in user.bookmarked_jobs if job_id not in to_remove]
            removed = len(user.bookmarked_jobs) - len(remaining)
            if removed:
                self._save_bookmarks(user_id, remaining)
            return removed, len(remaining)

    def list_bookmarked_jobs(self, user_id: str) -> list[StoredJob]:
        with self._lock:
            user = self.get_user_or_raise(user_id)
            return self.get_jobs(user.bookmarked_jobs)

    # Applications

    def upsert_application(
        self,
        user_id: str,
        job_id: str,
        *,
        status: str,
        notes: str | None,
    ) -> Application:
        """Create or move an application; the first move to an active status counts as applying."""
        with self._lock:
            self.get_user_or_raise(user_id)
            self.get_job_or_raise(job_id)
            now = now_utc_iso()
            previous = self.connection.execute(
                "SELECT status FROM applications WHERE user_id = ? AND job_id = ?",
                (user_id, job_id),
            ).fetchone()
            previous_status = previous["status"] if previous else None
            self.connection.execute(
                """
                INSERT INTO applications (user_id, job_id, status, notes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, job_id) DO UPDATE SET
                    status = excluded.status,
                    notes = COALESCE(excluded.notes, applications.notes),
                    updated_at = excluded.updated_at
                """,
                (user_id, job_id, status, notes, now, now),
            )
            became_active = status not in PASSIVE_APPLICATION_STATUSES and (
                previous_status is None or previous_status in PASSIVE_APPLICATION_STATUSES
            )
            if became_active:
                self.connection.execute(
                    "UPDATE jobs SET applications = applications + 1 WHERE id = ?",
                    (job_id,),
                )
            self.connection.commit()
            row = self.connection.execute(
                """
                SELECT user_id, job_id, status, notes, created_at, updated_at
                FROM applications
                WHERE user_id = ? AND job_id = ?
                """,
                (user_id, job_id),
            ).fetchone()
            return Application(**dict(row))

    def list_applications(self, user_id: str) -> list[Application]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT user_id, job_id, status, notes, created_at, updated_at
                FROM applications
                WHERE user_id = ?
                ORDER BY updated_at DESC
                """,
                (user_id,),
            )
            return [Application(**dict(row)) for row in cursor.fetchall()]

    # Recommendation runs

    def record_recommendations(
        self,
        user_id: str,
        kind: str,
        items: list[tuple[str, str, int]],
    ) -> tuple[int, str]:
        with self._lock:
            generated_at = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO recommendation_runs (user_id, kind, generated_at)
                VALUES (?, ?, ?)
                """,
                (user_id, kind, generated_at),
            )
            run_id = int(cursor.lastrowid)
            self.connection.executemany(
                """
                INSERT INTO recommendation_items (run_id, job_id, title, match_score, rank)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (run_id, job_id, title, match_score, rank)
                    for rank, (job_id, title, match_score) in enumerate(items, start=1)
                ],
            )
            self.connection.commit()
            return run_id, generated_at

    def list_recommendation_runs(self, user_id: str, limit: int) -> list[RecommendationRun]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    r.id AS run_id,
                    r.kind AS kind,
                    r.generated_at AS generated_at,
                    COUNT(i.id) AS recommendation_count
                FROM recommendation_runs r
                LEFT JOIN recommendation_items i ON i.run_id = r.id
                WHERE r.user_id = ?
                GROUP BY r.id, r.kind, r.generated_at
                ORDER BY r.id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            return [RecommendationRun(**dict(row)) for row in cursor.fetchall()]

    # Provider state and aggregation history

    def get_provider_state(self, source: str) -> ProviderState | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    source,
                    last_run_at,
                    last_success_at,
                    last_status,
                    last_error,
                    next_eligible_run_at,
                    consecutive_failures
                FROM provider_state
                WHERE source = ?
                """,
                (source,),
            ).fetchone()
            if row is None:
                return None
            return ProviderState(**dict(row))

    def start_aggregation_run(self, *, started_at: str, trigger: str, respect_backoff: bool) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                INSERT INTO aggregation_runs (started_at, trigger, respect_backoff)
                VALUES (?, ?, ?)
                """,
                (started_at, trigger, int(respect_backoff)),
            )
            self.connection.commit()
            return int(cursor.lastrowid)

    def finish_aggregation_run(
        self,
        run_id: int,
        *,
        finished_at: str,
        results: list[ProviderRunResult],
    ) -> None:
        with self._lock:
            self.connection.execute(
                """
                UPDATE aggregation_runs
                SET
                    finished_at = ?,
                    requested_sources = ?,
                    successful_sources = ?,
                    failed_sources = ?,
                    skipped_sources = ?,
                    total_fetched = ?,
                    total_inserted = ?,
                    total_updated = ?,
                    total_failed = ?
                WHERE id = ?
                """,
                (
                    finished_at,
                    len(results),
                    sum(1 for result in results if result.status == "ok"),
                    sum(1 for result in results if result.status == "error"),
                    sum(1 for result in results if result.status == "skipped"),
                    sum(result.fetched for result in results),
                    sum(result.inserted for result in results),
                    sum(result.updated for result in results),
                    sum(result.failed for result in results),
                    run_id,
                ),
            )
            self.connection.commit()

    def record_provider_run(
        self,
        source: str,
        *,
        run_id: int | None,
        ran_at: str,
        trigger: str,
        status: str,
        fetched: int,
        inserted: int,
        updated: int,
        failed: int,
        error: str | None,
        respect_backoff: bool,
        duration_ms: float,
    ) -> ProviderRunResult:
        """Persist one provider run and advance its failure backoff.

        Failures back off exponentially from one minute up to an hour; a success
        resets the counter. Skipped runs leave the existing backoff untouched.
        """
        with self._lock:
            row = self.connection.execute(
                """
                SELECT consecutive_failures, next_eligible_run_at, last_error
                FROM provider_state
                WHERE source = ?
                """,
                (source,),
            ).fetchone()
            previous_failures = int(row["consecutive_failures"] or 0) if row else 0
            next_eligible_previous = row["next_eligible_run_at"] if row else None
            previous_last_error = row["last_error"] if row else None

            attempt_number = previous_failures + 1
            backoff_seconds = 0
            next_eligible_run_at: str | None = None
            last_success_at: str | None = None
            next_failure_count = previous_failures
            last_error = error

            if status == "ok":
                attempt_number = 1
                next_failure_count = 0
                last_success_at = ran_at
                last_error = None
            elif status == "error":
                next_failure_count = previous_failures + 1
                backoff_seconds = min(60 * (2 ** max(next_failure_count - 1, 0)), 3600)
                next_eligible = datetime.fromisoformat(ran_at) + timedelta(seconds=backoff_seconds)
                next_eligible_run_at = next_eligible.isoformat()
            elif status == "skipped":
                next_eligible_run_at = next_eligible_previous
                last_error = error or previous_last_error
                if next_eligible_run_at:
                    parsed_now = parse_iso_datetime(ran_at)
                    parsed_next = parse_iso_datetime(next_eligible_run_at)
                    if parsed_now and parsed_next:
                        delta = parsed_next - parsed_now
                        backoff_seconds = max(int(delta.total_seconds()), 0)

            self.connection.execute(
                """
                INSERT INTO provider_state (
                    source,
                    last_run_at,
                    last_success_at,
                    last_status,
                    last_error,
                    next_eligible_run_at,
                    consecutive_failures,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    last_success_at = COALESCE(excluded.last_success_at, provider_state.last_success_at),
                    last_status = excluded.last_status,
                    last_error = excluded.last_error,
                    next_eligible_run_at = excluded.next_eligible_run_at,
                    consecutive_failures = excluded.consecutive_failures,
                    updated_at = excluded.updated_at
                """,
                (
                    source,
                    ran_at,
                    last_success_at,
                    status,
                    last_error,
                    next_eligible_run_at,
                    next_failure_count,
                    now_utc_iso(),
                ),
            )
            self.connection.execute(
                """
                INSERT INTO provider_run_history (
                    run_id,
                    source,
                    ran_at,
                    trigger,
                    status,
                    fetched,
                    inserted,
                    updated,
                    failed,
                    attempt_number,
                    backoff_seconds,
                    next_eligible_run_at,
                    respect_backoff,
                    error,
                    duration_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    source,
                    ran_at,
                    trigger,
                    status,
                    fetched,
                    inserted,
                    updated,
                    failed,
                    attempt_number,
                    backoff_seconds,
                    next_eligible_run_at,
                    int(respect_backoff),
                    error,
                    round(duration_ms, 3),
                ),
            )
            self.connection.commit()

            return ProviderRunResult(
                source=source,
                ran_at=ran_at,
                trigger=trigger,  # type: ignore[arg-type]
                status=status,  # type: ignore[arg-type]
                fetched=fetched,
                inserted=inserted,
                updated=updated,
                failed=failed,
                attempt_number=attempt_number,
                backoff_seconds=backoff_seconds,
                next_eligible_run_at=next_eligible_run_at,
                error=error,
                duration_ms=round(duration_ms, 3),
            )

    def list_provider_run_history(
        self,
        *,
        limit: int,
        offset: int,
        source: str | None,
        trigger: str | None,
        status: str | None,
        ran_after: str | None,
        ran_before: str | None,
    ) -> list[ProviderRunHistoryItem]:
        with self._lock:
            query = """
                SELECT
                    id AS history_id,
                    run_id,
                    source,
                    ran_at,
                    trigger,
                    status,
                    fetched,
                    inserted,
                    updated,
                    failed,
                    attempt_number,
                    backoff_seconds,
                    next_eligible_run_at,
                    respect_backoff,
                    error,
                    duration_ms
                FROM provider_run_history
            """
            params: list[Any] = []
            filters: list[str] = []
            if source:
                filters.append("source = ?")
                params.append(source.upper())
            if trigger:
                filters.append("trigger = ?")
                params.append(trigger)
            if status:
                filters.append("status = ?")
                params.append(status)
            if ran_after:
                filters.append("ran_at >= ?")
                params.append(ran_after)
            if ran_before:
                filters.append("ran_at <= ?")
                params.append(ran_before)
            if filters:
                query += " WHERE " + " AND ".join(filters)
            query += " ORDER BY id DESC LIMIT ? OFFSET ?"
            params.append(limit)
            params.append(offset)
            cursor = self.connection.execute(query, tuple(params))
            items: list[ProviderRunHistoryItem] = []
            for row in cursor.fetchall():
                payload = dict(row)
                payload["respect_backoff"] = bool(payload["respect_backoff"])
                items.append(ProviderRunHistoryItem(**payload))
            return items

    def _to_job(self, row: sqlite3.Row) -> StoredJob:
        return StoredJob(
            id=row["id"],
            source=row["source"],
            source_job_id=row["source_job_id"],
            title=row["title"],
            company=row["company"],
            location=row["location"],
            description=row["description"],
            requirements=json.loads(row["requirements_json"] or "[]"),
            employment_type=row["employment_type"],
            experience_level=row["experience_level"],
            remote=bool(row["remote"]),
            salary_min=row["salary_min"],
            salary_max=row["salary_max"],
            salary_currency=row["salary_currency"],
            visa_sponsorship=VisaSponsorship(
                h1b=bool(row["visa_h1b"]),
                opt=bool(row["visa_opt"]),
                stem_opt=bool(row["visa_stem_opt"]),
            ),
            source_url=row["source_url"],
            application_url=row["application_url"],
            is_university_job=bool(row["is_university_job"]),
            university_name=row["university_name"],
            is_campus_exclusive=bool(row["is_campus_exclusive"]),
            posted_date=row["posted_date"],
            expiry_date=row["expiry_date"],
            company_logo=row["company_logo"],
            company_website=row["company_website"],
            skills_required=json.loads(row["skills_json"] or "[]"),
            industry_tags=json.loads(row["industry_tags_json"] or "[]"),
            views=int(row["views"]),
            applications=int(row["applications"]),
            is_active=bool(row["is_active"]),
            is_featured=bool(row["is_featured"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_refreshed=row["last_refreshed"],
        )

    def _to_user(self, row: sqlite3.Row) -> User:
        preferences: dict[str, Any] = json.loads(row["preferences_json"] or "{}")
        return User(
            user_id=row["user_id"],
            name=row["name"],
            email=row["email"],
            visa_type=row["visa_type"],
            university=row["university"],
            major=row["major"],
            graduation_year=row["graduation_year"],
            skills=json.loads(row["skills_json"] or "[]"),
            job_preferences=JobPreferences(**preferences),
            bookmarked_jobs=json.loads(row["bookmarked_jobs_json"] or "[]"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
