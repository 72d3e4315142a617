from __future__ import annotations

import re
from datetime import UTC, datetime

from common.utils import parse_iso_datetime, tokenize

from jobboard.models import MatchBreakdown, MatchResult, SimilarJob, StoredJob, User

FIELD_WEIGHTS: dict[str, int] = {
    "skills": 35,
    "employment_type": 15,
    "location": 15,
    "remote": 10,
    "visa": 15,
    "salary": 5,
    "experience": 5,
}
NEUTRAL = 0.5

VISA_ACCEPTED_FLAGS: dict[str, frozenset[str]] = {
    "F1": frozenset({"opt", "h1b"}),
    "OPT": frozenset({"opt", "h1b"}),
    "STEM_OPT": frozenset({"stem_opt", "h1b"}),
    "H1B": frozenset({"h1b"}),
}
VISA_LABELS = {"h1b": "H-1B sponsorship", "opt": "OPT", "stem_opt": "STEM OPT"}


def _freshness_bonus(posted_date: str | None, now: datetime) -> float:
    posted = parse_iso_datetime(posted_date)
    if posted is None:
        return 0.0
    age_hours = (now - posted).total_seconds() / 3600
    if age_hours <= 24:
        return 5.0
    if age_hours <= 72:
        return 3.0
    if age_hours <= 168:
        return 1.0
    return 0.0


def _skill_pattern(skill: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![a-z0-9]){re.escape(skill.lower())}(?![a-z0-9])")


def matched_skills(user_skills: list[str], job: StoredJob) -> list[str]:
    job_skills = {skill.lower() for skill in job.skills_required}
    text = f"{job.title} {job.description}".lower()
    matches: list[str] = []
    for skill in user_skills:
        lowered = skill.lower()
        if lowered in job_skills or _skill_pattern(lowered).search(text):
            matches.append(skill)
    return matches


def visa_requirement(user: User) -> frozenset[str] | None:
    """Return the sponsorship flags that satisfy the user, or None when none are needed."""
    if user.visa_type in VISA_ACCEPTED_FLAGS:
        return VISA_ACCEPTED_FLAGS[user.visa_type]
    if user.job_preferences.visa_sponsorship_required:
        return frozenset({"h1b", "opt", "stem_opt"})
    return None


def score_job(user: User, job: StoredJob, now: datetime | None = None) -> MatchResult:
    now = now or datetime.now(UTC)
    preferences = user.job_preferences
    reasons: list[str] = []

    skills = matched_skills(user.skills, job)
    if user.skills:
        skills_fraction = len(skills) / len(user.skills)
    else:
        skills_fraction = 0.0
    if skills:
        reasons.append(f"Matches {len(skills)} of your skills: {', '.join(skills[:5])}")

    if not preferences.job_types:
        type_fraction = NEUTRAL
    elif job.employment_type in preferences.job_types:
        type_fraction = 1.0
        reasons.append(f"Preferred job type ({job.employment_type})")
    else:
        type_fraction = 0.0

    job_location = job.location.lower()
    if not preferences.locations:
        location_fraction = NEUTRAL
    else:
        matched_location = next(
            (
                location
                for location in preferences.locations
                if location.lower() in job_location
                or (location.lower() == "remote" and job.remote)
            ),
            None,
        )
        location_fraction = 1.0 if matched_location else 0.0
        if matched_location:
            reasons.append(f"Located in {matched_location}")

    if preferences.remote_only:
        remote_fraction = 1.0 if job.remote else 0.0
    else:
        remote_fraction = 1.0
    if job.remote:
        reasons.append("Remote position")

    accepted = visa_requirement(user)
    offered = {flag for flag, value in job.visa_sponsorship.model_dump().items() if value}
    if accepted is None:
        visa_fraction = 1.0
    elif accepted & offered:
        visa_fraction = 1.0
        labels = [VISA_LABELS[flag] for flag in ("h1b", "opt", "stem_opt") if flag in offered]
        reasons.append(f"Visa friendly: {', '.join(labels)}")
    else:
        visa_fraction = 0.0

    if preferences.salary_min is None:
        salary_fraction = 1.0
    else:
        top = job.salary_max if job.salary_max is not None else job.salary_min
        if top is None:
            salary_fraction = NEUTRAL
        elif top >= preferences.salary_min:
            salary_fraction = 1.0
            reasons.append("Salary meets your minimum")
        else:
            salary_fraction = 0.0

    if not preferences.experience_levels:
        experience_fraction = NEUTRAL
    elif job.experience_level in preferences.experience_levels:
        experience_fraction = 1.0
        reasons.append(f"Experience level fits ({job.experience_level})")
    else:
        experience_fraction = 0.0

    freshness = _freshness_bonus(job.posted_date, now)
    if freshness >= 5:
        reasons.append("Posted in the last 24 hours")

    breakdown = MatchBreakdown(
        skills=round(FIELD_WEIGHTS["skills"] * skills_fraction, 2),
        employment_type=round(FIELD_WEIGHTS["employment_type"] * type_fraction, 2),
        location=round(FIELD_WEIGHTS["location"] * location_fraction, 2),
        remote=round(FIELD_WEIGHTS["remote"] * remote_fraction, 2),
        visa=round(FIELD_WEIGHTS["visa"] * visa_fraction, 2),
        salary=round(FIELD_WEIGHTS["salary"] * salary_fraction, 2),
        experience=round(FIELD_WEIGHTS["experience"] * experience_fraction, 2),
        freshness=freshness,
    )
    total = sum(breakdown.model_dump().values())
    return MatchResult(
        job_id=job.id,
        match_score=int(round(max(0.0, min(total, 100.0)))),
        match_reasons=reasons,
        matched_skills=skills,
        breakdown=breakdown,
    )


def rank_jobs_for_user(
    user: User,
    jobs: list[StoredJob],
    *,
    limit: int,
    exclude_job_ids: set[str] | None = None,
    now: datetime | None = None,
) -> list[tuple[StoredJob, MatchResult]]:
    now = now or datetime.now(UTC)
    excluded = exclude_job_ids or set()
    scored = [(job, score_job(user, job, now)) for job in jobs if job.id not in excluded]
    scored.sort(key=lambda item: (item[1].match_score, item[0].posted_date), reverse=True)
    return scored[:limit]


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def similarity(target: StoredJob, candidate: StoredJob) -> float:
    title_score = _jaccard(tokenize(target.title), tokenize(candidate.title))
    skills_score = _jaccard(
        {skill.lower() for skill in target.skills_required},
        {skill.lower() for skill in candidate.skills_required},
    )
    company_score = 1.0 if target.company.lower() == candidate.company.lower() else 0.0
    type_score = 1.0 if target.employment_type == candidate.employment_type else 0.0
    return 0.5 * title_score + 0.3 * skills_score + 0.1 * company_score + 0.1 * type_score


def find_similar_jobs(
    target: StoredJob,
    candidates: list[StoredJob],
    *,
    limit: int,
) -> list[SimilarJob]:
    """Rank candidates by title, skills, company and job-type overlap with ``target``.

    Candidates that only share the employment type score 0.1 and are kept; jobs
    with nothing in common are dropped.
    """
    scored: list[SimilarJob] = []
    for candidate in candidates:
        if candidate.id == target.id:
            continue
        value = similarity(target, candidate)
        if value <= 0:
            continue
        scored.append(SimilarJob(job=candidate, similarity=round(value, 4)))
    scored.sort(key=lambda item: (item.similarity, item.job.posted_date), reverse=True)
    return scored[:limit]
