from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlparse

import requests

from utils import parse_datetime_maybe

logger = logging.getLogger("github")

GITHUB_API = "https://api.github.com"


class GitHubAnalysisError(Exception):
    pass


def username_from_url(github_url: str) -> str:
    s = str(github_url or "").strip().rstrip("/")
    if not s:
        return ""
    path = urlparse(s).path if "://" in s else s
    parts = [p for p in path.split("/") if p]
    return parts[-1] if parts else ""


def is_github_url(github_url: str) -> bool:
    u = urlparse(str(github_url or "").strip())
    host = (u.hostname or "").lower()
    return u.scheme in {"http", "https"} and (host == "github.com" or host.endswith(".github.com"))


def language_stats(repositories: list[dict[str, Any]]) -> dict[str, int]:
    stats: dict[str, int] = {}
    for repo in repositories[:20]:
        lang = repo.get("language")
        if lang and lang != "Unknown":
            stats[lang] = stats.get(lang, 0) + int(repo.get("size") or 0)
    return stats


def activity_metrics(repositories: list[dict[str, Any]], now: Optional[datetime] = None) -> dict[str, float]:
    now = now or datetime.now(timezone.utc)
    one_year_ago = now - timedelta(days=365)
    recent = 0
    for repo in repositories:
        pushed = parse_datetime_maybe(repo.get("pushed_at"))
        if pushed and pushed > one_year_ago:
            recent += 1

    # The REST API exposes no per-user commit history, so activity is
    # estimated from recently pushed repositories.
    commits = recent * 10
    active_days = recent * 5
    return {
        "commitsLastYear": commits,
        "activeDays": active_days,
        "averageCommitsPerDay": commits / 365,
        "consistencyScore": min(10.0, (active_days / 365) * 10),
    }


def code_quality_metrics(repositories: list[dict[str, Any]]) -> dict[str, float]:
    n = len(repositories)
    if not n:
        return {"averageRepoSize": 0, "documentationScore": 0, "testCoverage": 0, "codeComplexity": 0}

    total_size = sum(int(r.get("size") or 0) for r in repositories)
    documented = sum(1 for r in repositories if r.get("description"))
    testing = sum(
        1
        for r in repositories
        if any("test" in str(t) for t in (r.get("topics") or [])) or "test" in str(r.get("name") or "").lower()
    )
    languages = {r.get("language") for r in repositories}
    return {
        "averageRepoSize": total_size / n,
        "documentationScore": documented / n * 10,
        "testCoverage": testing / n * 10,
        "codeComplexity": min(10.0, len(languages) * 1.5),
    }


def collaboration_metrics(repositories: list[dict[str, Any]]) -> dict[str, int]:
    forks = sum(1 for r in repositories if r.get("is_fork"))
    return {
        "forksCreated": forks,
        "issuesOpened": 0,
        "pullRequestsContributed": 0,
        "contributionsToOthers": forks,
    }


def overall_scores(activity: dict[str, Any], quality: dict[str, Any], collaboration: dict[str, Any]) -> dict[str, float]:
    act = min(10.0, activity["consistencyScore"])
    cq = quality["documentationScore"] * 0.4 + quality["testCoverage"] * 0.3 + quality["codeComplexity"] * 0.3
    col = min(10.0, collaboration["contributionsToOthers"] * 2)
    cons = activity["consistencyScore"]
    overall = act * 0.3 + cq * 0.4 + col * 0.2 + cons * 0.1
    return {
        "activity": round(act, 2),
        "codeQuality": round(cq, 2),
        "collaboration": round(col, 2),
        "consistency": round(cons, 2),
        "overall": round(overall, 2),
    }


def insights_for(
    profile: dict[str, Any],
    repositories: list[dict[str, Any]],
    languages: dict[str, int],
    scores: dict[str, float],
    now: Optional[datetime] = None,
) -> list[str]:
    now = now or datetime.now(timezone.utc)
    insights = []

    top = [lang for lang, _ in sorted(languages.items(), key=lambda kv: kv[1], reverse=True)[:3]]
    if top:
        insights.append(f"Primary expertise in {', '.join(top)}")

    if scores["activity"] > 7:
        insights.append("Highly active developer with consistent contributions")
    elif scores["activity"] > 4:
        insights.append("Moderately active with regular contributions")
    else:
        insights.append("Limited recent activity or newer to GitHub")

    if len([r for r in repositories if not r.get("is_fork")]) > 10:
        insights.append("Extensive portfolio of original projects")

    created = parse_datetime_maybe(profile.get("created_at"))
    if created:
        age = now.year - created.year
        if age > 3:
            insights.append(f"{age} years of experience on GitHub")

    return insights


def recommendations_for(scores: dict[str, float]) -> list[str]:
    recs = []
    if scores["overall"] > 7:
        recs.append("Strong candidate with excellent GitHub presence")
    elif scores["overall"] > 5:
        recs.append("Good candidate with solid development background")
    else:
        recs.append("Consider additional assessment beyond GitHub activity")
    if scores["codeQuality"] < 5:
        recs.append("May benefit from code review and documentation practices")
    if scores["collaboration"] < 5:
        recs.append("Limited open source collaboration - assess team skills in interview")
    return recs


class GitHubAnalyzer:
    def __init__(self, token: str = "", session: Optional[requests.Session] = None, timeout: float = 15.0):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.session.headers.update({"Accept": "application/vnd.github+json", "User-Agent": "devmeet-backend"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            resp = self.session.get(f"{GITHUB_API}{path}", params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise GitHubAnalysisError(f"GitHub request failed: {e}") from e
        if resp.status_code == 404:
            raise GitHubAnalysisError("GitHub user not found")
        if resp.status_code != 200:
            raise GitHubAnalysisError(f"GitHub API error: {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise GitHubAnalysisError("GitHub returned a non-JSON response") from e

    def get_profile(self, username: str) -> dict[str, Any]:
        data = self._get(f"/users/{username}")
        if not isinstance(data, dict):
            raise GitHubAnalysisError("Unexpected profile payload")
        return {
            "login": data.get("login") or username,
            "name": data.get("name") or "",
            "bio": data.get("bio") or "",
            "location": data.get("location") or "",
            "company": data.get("company") or "",
            "blog": data.get("blog") or "",
            "public_repos": int(data.get("public_repos") or 0),
            "followers": int(data.get("followers") or 0),
            "following": int(data.get("following") or 0),
            "created_at": data.get("created_at") or "",
            "avatar_url": data.get("avatar_url") or "",
        }

    def get_repositories(self, username: str) -> list[dict[str, Any]]:
        data = self._get(f"/users/{username}/repos", params={"type": "all", "sort": "updated", "per_page": 100})
        if not isinstance(data, list):
            raise GitHubAnalysisError("Unexpected repositories payload")
        return [
            {
                "id": repo.get("id"),
                "name": repo.get("name") or "",
                "description": repo.get("description") or "",
                "language": repo.get("language") or "Unknown",
                "stargazers_count": int(repo.get("stargazers_count") or 0),
                "forks_count": int(repo.get("forks_count") or 0),
                "size": int(repo.get("size") or 0),
                "created_at": repo.get("created_at") or "",
                "updated_at": repo.get("updated_at") or "",
                "pushed_at": repo.get("pushed_at") or "",
                "topics": list(repo.get("topics") or []),
                "is_fork": bool(repo.get("fork")),
            }
            for repo in data
            if isinstance(repo, dict)
        ]

    def analyze_candidate(self, username: str) -> dict[str, Any]:
        user = str(username or "").strip()
        if not user:
            raise GitHubAnalysisError("Missing GitHub username")

        profile = self.get_profile(user)
        repositories = self.get_repositories(user)
        languages = language_stats(repositories)
        activity = activity_metrics(repositories)
        quality = code_quality_metrics(repositories)
        collaboration = collaboration_metrics(repositories)
        scores = overall_scores(activity, quality, collaboration)
        insights = insights_for(profile, repositories, languages, scores)

        logger.info("analyzed github user=%s repos=%s overall=%s", user, len(repositories), scores["overall"])

        return {
            "profile": profile,
            "repositories": repositories,
            "languageStats": languages,
            "activityMetrics": activity,
            "codeQualityMetrics": quality,
            "collaborationMetrics": collaboration,
            "overallScores": scores,
            "insights": insights,
            "recommendations": recommendations_for(scores),
        }
