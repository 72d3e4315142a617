from __future__ import annotations

from collections import Counter

from jobboard.models import (
    Application,
    CompanyCount,
    OrganizedSavedJobsResponse,
    SalaryRange,
    SavedJobEntry,
    SavedJobsAnalytics,
    StoredJob,
)

TOP_COMPANIES = 10


def organize_saved_jobs(
    user_id: str,
    bookmarked: list[StoredJob],
    applications: list[Application],
    application_jobs: list[StoredJob],
) -> OrganizedSavedJobsResponse:
    """Split a user's saved jobs into applied, interested and not-interested buckets.

    Bookmarks without an application record count as interested.
    """
    jobs_by_id = {job.id: job for job in [*bookmarked, *application_jobs]}
    applied: list[SavedJobEntry] = []
    interested: list[SavedJobEntry] = []
    not_interested: list[SavedJobEntry] = []
    tracked: set[str] = set()

    for application in applications:
        job = jobs_by_id.get(application.job_id)
        if job is None:
            continue
        tracked.add(job.id)
        entry = SavedJobEntry(
            job=job,
            status=application.status,
            notes=application.notes,
            updated_at=application.updated_at,
        )
        if application.status == "NOT_INTERESTED":
            not_interested.append(entry)
        elif application.status == "SAVED":
            interested.append(entry)
        else:
            applied.append(entry)

    for job in bookmarked:
        if job.id not in tracked:
            interested.append(SavedJobEntry(job=job))

    return OrganizedSavedJobsResponse(
        user_id=user_id,
        applied=applied,
        interested=interested,
        not_interested=not_interested,
        counts={
            "applied": len(applied),
            "interested": len(interested),
            "not_interested": len(not_interested),
            "total": len(applied) + len(interested) + len(not_interested),
        },
    )


def build_saved_analytics(jobs: list[StoredJob]) -> SavedJobsAnalytics | None:
    if not jobs:
        return None

    salaries = [
        value
        for job in jobs
        for value in (job.salary_min, job.salary_max)
        if value is not None
    ]
    salary_range = None
    if salaries:
        salary_range = SalaryRange(
            min=min(salaries),
            max=max(salaries),
            average=round(sum(salaries) / len(salaries), 2),
        )

    companies = Counter(job.company for job in jobs)
    return SavedJobsAnalytics(
        by_employment_type=dict(Counter(job.employment_type for job in jobs)),
        by_location=dict(Counter(job.location for job in jobs)),
        by_experience_level=dict(Counter(job.experience_level for job in jobs)),
        visa_sponsorship={
            "h1b": sum(1 for job in jobs if job.visa_sponsorship.h1b),
            "opt": sum(1 for job in jobs if job.visa_sponsorship.opt),
            "stem_opt": sum(1 for job in jobs if job.visa_sponsorship.stem_opt),
        },
        salary_range=salary_range,
        top_companies=[
            CompanyCount(company=company, count=count)
            for company, count in companies.most_common(TOP_COMPANIES)
        ],
        remote_count=sum(1 for job in jobs if job.remote),
    )
