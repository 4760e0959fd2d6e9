from datetime import datetime, timezone

import pytest
import requests

from conftest import FakeGitHubSession, github_routes
from services.github_analyzer import (
    GitHubAnalysisError,
    GitHubAnalyzer,
    activity_metrics,
    code_quality_metrics,
    collaboration_metrics,
    insights_for,
    is_github_url,
    language_stats,
    overall_scores,
    recommendations_for,
    username_from_url,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)

REPOS = [
    {"name": "api", "language": "Python", "size": 100, "description": "REST API", "topics": [], "is_fork": False},
    {"name": "api-tests", "language": "Python", "size": 50, "description": "", "topics": [], "is_fork": False},
    {"name": "cli", "language": "Go", "size": 30, "description": "Command line tool", "topics": ["testing"], "is_fork": True},
    {"name": "sandbox", "language": "Rust", "size": 20, "description": "", "topics": [], "is_fork": True},
]


def test_username_from_url():
    assert username_from_url("https://github.com/octo/") == "octo"
    assert username_from_url("github.com/octo") == "octo"
    assert username_from_url("octo") == "octo"
    assert username_from_url("") == ""


def test_is_github_url():
    assert is_github_url("https://github.com/octo")
    assert is_github_url("http://www.github.com/octo")
    assert not is_github_url("https://gitlab.com/octo")
    assert not is_github_url("https://evilgithub.com/octo")
    assert not is_github_url("ftp://github.com/octo")


def test_language_stats_sums_sizes_and_skips_unknown():
    repos = [
        {"language": "Python", "size": 100},
        {"language": "Python", "size": 50},
        {"language": "Unknown", "size": 10},
        {"language": None, "size": 5},
        {"language": "Go", "size": 30},
    ]
    assert language_stats(repos) == {"Python": 150, "Go": 30}


def test_activity_counts_repos_pushed_within_a_year():
    repos = [{"pushed_at": "2026-05-01T00:00:00Z"}, {"pushed_at": "2024-01-01T00:00:00Z"}, {"pushed_at": ""}]

    activity = activity_metrics(repos, now=NOW)

    assert activity["commitsLastYear"] == 10
    assert activity["activeDays"] == 5
    assert activity["consistencyScore"] == pytest.approx(5 / 365 * 10)


def test_code_quality_and_collaboration():
    quality = code_quality_metrics(REPOS)
    assert quality["averageRepoSize"] == 50
    assert quality["documentationScore"] == 5
    assert quality["testCoverage"] == 5
    assert quality["codeComplexity"] == 4.5

    assert code_quality_metrics([])["documentationScore"] == 0
    assert collaboration_metrics(REPOS)["contributionsToOthers"] == 2


def test_overall_scores_weighting():
    scores = overall_scores(
        {"consistencyScore": 5.0},
        {"documentationScore": 5, "testCoverage": 5, "codeComplexity": 4.5},
        {"contributionsToOthers": 2},
    )
    assert scores["activity"] == 5.0
    assert scores["codeQuality"] == pytest.approx(4.85, abs=0.011)
    assert scores["collaboration"] == 4
    assert scores["overall"] == pytest.approx(4.74, abs=0.011)


def test_insights_and_recommendations():
    scores = {"activity": 5.0, "codeQuality": 4.85, "collaboration": 4, "consistency": 5.0, "overall": 4.74}

    insights = insights_for({"created_at": "2015-01-01T00:00:00Z"}, REPOS, {"Python": 150, "Go": 30}, scores, now=NOW)

    assert insights == [
        "Primary expertise in Python, Go",
        "Moderately active with regular contributions",
        "11 years of experience on GitHub",
    ]
    assert recommendations_for(scores) == [
        "Consider additional assessment beyond GitHub activity",
        "May benefit from code review and documentation practices",
        "Limited open source collaboration - assess team skills in interview",
    ]
    assert recommendations_for({"overall": 8, "codeQuality": 8, "collaboration": 8}) == [
        "Strong candidate with excellent GitHub presence"
    ]


def test_analyzer_fetches_profile_and_repositories():
    raw_repos = [
        {"id": 1, "name": "api-tests", "description": "API", "language": "Python", "size": 100, "fork": False, "topics": ["testing"]},
        {"id": 2, "name": "dotfiles", "language": None, "size": 3, "fork": True},
    ]
    session = FakeGitHubSession(github_routes("octo", repos=raw_repos))

    result = GitHubAnalyzer(token="ghp_x", session=session).analyze_candidate("octo")

    assert session.headers["Authorization"] == "Bearer ghp_x"
    assert session.headers["User-Agent"] == "devmeet-backend"
    assert result["profile"]["login"] == "octo"
    assert result["profile"]["public_repos"] == 2
    assert [r["is_fork"] for r in result["repositories"]] == [False, True]
    assert result["repositories"][1]["language"] == "Unknown"
    assert result["languageStats"] == {"Python": 100}
    assert result["collaborationMetrics"]["forksCreated"] == 1
    assert set(result["overallScores"]) == {"activity", "codeQuality", "collaboration", "consistency", "overall"}
    assert session.calls[1][1] == {"type": "all", "sort": "updated", "per_page": 100}


def test_analyzer_with_no_repositories_scores_zero():
    result = GitHubAnalyzer(session=FakeGitHubSession(github_routes("octo"))).analyze_candidate("octo")
    assert result["overallScores"]["overall"] == 0.0
    assert "Limited recent activity or newer to GitHub" in result["insights"]


def test_analyzer_errors():
    with pytest.raises(GitHubAnalysisError, match="not found"):
        GitHubAnalyzer(session=FakeGitHubSession({})).analyze_candidate("ghost")

    with pytest.raises(GitHubAnalysisError, match="500"):
        GitHubAnalyzer(session=FakeGitHubSession({"/users/octo": (500, {})})).analyze_candidate("octo")

    with pytest.raises(GitHubAnalysisError, match="Missing"):
        GitHubAnalyzer(session=FakeGitHubSession()).analyze_candidate("  ")

    bad_repos = FakeGitHubSession({"/users/octo/repos": (200, {"oops": True}), "/users/octo": (200, {"login": "octo"})})
    with pytest.raises(GitHubAnalysisError, match="Unexpected"):
        GitHubAnalyzer(session=bad_repos).analyze_candidate("octo")


def test_network_failures_become_analysis_errors():
    class BrokenSession(FakeGitHubSession):
        def get(self, url, params=None, timeout=None):
            raise requests.ConnectionError("boom")

    with pytest.raises(GitHubAnalysisError, match="request failed"):
        GitHubAnalyzer(session=BrokenSession()).analyze_candidate("octo")


def test_non_json_replies_become_analysis_errors():
    html = FakeGitHubSession({"/users/octo": (200, ValueError("Expecting value: <html>"))})
    with pytest.raises(GitHubAnalysisError, match="non-JSON"):
        GitHubAnalyzer(session=html).analyze_candidate("octo")

    listed = FakeGitHubSession({"/users/octo": (200, ["octo"])})
    with pytest.raises(GitHubAnalysisError, match="Unexpected profile"):
        GitHubAnalyzer(session=listed).analyze_candidate("octo")
