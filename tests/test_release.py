"""Tests for semantic versioning, change classification, and local releases."""

from __future__ import annotations

from pathlib import Path

import pytest

from chronovcs.errors import ValidationError
from chronovcs.release.classifier import build_breakdown, classify_message, pick_version_type
from chronovcs.release.manager import ReleaseManager, ReleaseState, resolve_version
from chronovcs.release.models import ReleaseTask
from chronovcs.release.semver import SemanticVersion, VersionType, compare
from chronovcs.vcs.repo import RepoManager

AUTHOR = "Ada <ada@example.com>"


def _make_repo(tmp_path: Path) -> RepoManager:
    repo = RepoManager(tmp_path / "repo")
    repo.init_repo()
    return repo


def _commit(repo: RepoManager, message: str, content: str | None = None):
    (repo.path / "a.txt").write_text(content if content is not None else message, encoding="utf-8")
    repo.stage("a.txt")
    return repo.commit(message, author=AUTHOR)


# ── compare ──────────────────────────────────────────────────────────────────

class TestCompare:

    def test_numeric_not_lexicographic(self):
        assert compare("1.2.0", "1.10.0") < 0
        assert compare("1.10.0", "1.2.0") > 0

    def test_prerelease_suffix_ignored(self):
        assert compare("2.0.0-rc1", "2.0.0") == 0
        assert compare("1.0.0+build.5", "1.0.0") == 0

    def test_blank_is_zero(self):
        assert compare("", "0.0.1") < 0
        assert compare(None, "0.0.0") == 0

    def test_short_versions_padded(self):
        assert compare("1.2", "1.2.0") == 0
        assert compare("1", "1.0.1") < 0

    def test_non_digits_stripped(self):
        assert compare("v1.2.3", "1.2.3") == 0

    def test_never_raises(self):
        assert compare("garbage", "0.0.0") == 0


# ── SemanticVersion ──────────────────────────────────────────────────────────

class TestSemanticVersion:

    def test_parse_and_str(self):
        version = SemanticVersion.parse("1.4.2")
        assert (version.major, version.minor, version.patch) == (1, 4, 2)
        assert str(version) == "1.4.2"

    def test_blank_parses_to_zero(self):
        assert SemanticVersion.parse("") == SemanticVersion(0, 0, 0)
        assert SemanticVersion.parse(None) == SemanticVersion(0, 0, 0)

    @pytest.mark.parametrize("text", ["1.2", "1.2.3.4", "v1.2.3", "1.2.3-rc1", "a.b.c"])
    def test_parse_is_strict(self, text: str):
        with pytest.raises(ValidationError):
            SemanticVersion.parse(text)

    def test_bump(self):
        base = SemanticVersion(1, 4, 2)
        assert str(base.bump(VersionType.MAJOR)) == "2.0.0"
        assert str(base.bump("minor")) == "1.5.0"
        assert str(base.bump("PATCH")) == "1.4.3"

    def test_ordering(self):
        assert SemanticVersion(1, 2, 0) < SemanticVersion(1, 10, 0)

    def test_invalid_version_type(self):
        with pytest.raises(ValidationError):
            VersionType.coerce("huge")


# ── Classifier ───────────────────────────────────────────────────────────────

class TestClassifier:

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("feat: add export", VersionType.MINOR),
            ("feat(api): add endpoint", VersionType.MINOR),
            ("fix: null check", VersionType.PATCH),
            ("refactor!: drop old API", VersionType.MAJOR),
            ("chore: bump\n\nBREAKING CHANGE: config format changed", VersionType.MAJOR),
            ("update readme", VersionType.PATCH),
            ("", VersionType.PATCH),
        ],
    )
    def test_classify_message(self, message: str, expected: VersionType):
        assert classify_message(message) is expected

    def test_breakdown_counts_messages_and_tasks(self):
        breakdown = build_breakdown(["feat: a", "fix: b", "fix: c"], ["MAJOR"])
        assert breakdown == {"MAJOR": 1, "MINOR": 1, "PATCH": 2}

    def test_pick_highest_bucket(self):
        assert pick_version_type({"MAJOR": 2, "MINOR": 1, "PATCH": 0}) == (
            VersionType.MAJOR, "2 breaking change(s) detected",
        )
        assert pick_version_type({"MAJOR": 0, "MINOR": 3, "PATCH": 1}) == (
            VersionType.MINOR, "3 new feature(s) added",
        )
        assert pick_version_type({"MAJOR": 0, "MINOR": 0, "PATCH": 0}) == (
            VersionType.PATCH, "0 bug fix(es)",
        )


# ── resolve_version ──────────────────────────────────────────────────────────

class TestResolveVersion:

    def test_auto_uses_fallback(self):
        assert resolve_version("1.2.3", "auto", None, VersionType.MINOR) == ("1.3.0", VersionType.MINOR)
        assert resolve_version("1.2.3", None, "patch", VersionType.MINOR) == ("1.2.4", VersionType.PATCH)

    def test_explicit_version_type_inferred(self):
        assert resolve_version("1.2.3", "2.0.0", None, VersionType.PATCH) == ("2.0.0", VersionType.MAJOR)
        assert resolve_version("1.2.3", "1.3.0", None, VersionType.PATCH) == ("1.3.0", VersionType.MINOR)
        assert resolve_version("1.2.3", "1.2.9", None, VersionType.MAJOR) == ("1.2.9", VersionType.PATCH)

    def test_explicit_version_must_increase(self):
        with pytest.raises(ValidationError):
            resolve_version("1.2.3", "1.2.3", None, VersionType.PATCH)
        with pytest.raises(ValidationError):
            resolve_version("1.2.3", "1.0.0", None, VersionType.PATCH)

    def test_malformed_explicit_version(self):
        with pytest.raises(ValidationError):
            resolve_version("1.2.3", "2.0", None, VersionType.PATCH)


# ── ReleaseState ─────────────────────────────────────────────────────────────

class TestReleaseState:

    def test_absent(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        assert ReleaseState.load(repo.path) is None

    def test_round_trip(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        commit_id = "a" * 64
        ReleaseState("1.4.0", commit_id).save(repo.path)
        assert (repo.vcs_dir / "RELEASE").read_text() == f"version=1.4.0\ncommit={commit_id}\n"
        assert ReleaseState.load(repo.path) == ReleaseState("1.4.0", commit_id)

    def test_without_commit(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        ReleaseState("0.1.0").save(repo.path)
        assert ReleaseState.load(repo.path) == ReleaseState("0.1.0", None)

    def test_blank_file(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        (repo.vcs_dir / "RELEASE").write_text("\n")
        assert ReleaseState.load(repo.path) is None


# ── ReleaseManager ───────────────────────────────────────────────────────────

class TestReleaseManager:

    def test_recommend_from_history(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _commit(repo, "fix: typo")
        _commit(repo, "feat: new export")
        recommendation = ReleaseManager(repo).recommend_version()
        assert recommendation.current_version == "0.0.0"
        assert recommendation.recommended_version == "0.1.0"
        assert recommendation.version_type is VersionType.MINOR
        assert recommendation.breakdown == {"MAJOR": 0, "MINOR": 1, "PATCH": 1}

    def test_tasks_raise_the_bump(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _commit(repo, "fix: typo")
        tasks = [ReleaseTask(key="PRJ-1", issue_type="Epic", version_type=VersionType.MAJOR)]
        assert ReleaseManager(repo).recommend_version(tasks).recommended_version == "1.0.0"

    def test_auto_release_records_state(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        head = _commit(repo, "fix: typo")
        manager = ReleaseManager(repo)

        release = manager.create_release(message="first cut")
        assert release.version == "0.0.1"
        assert release.version_type is VersionType.PATCH
        assert release.snapshot_commit_id == head.id
        assert manager.current_version() == "0.0.1"
        assert manager.state() == ReleaseState("0.0.1", head.id)

    def test_only_unreleased_commits_count(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _commit(repo, "feat!: rewrite")
        manager = ReleaseManager(repo)
        manager.create_release()
        assert manager.current_version() == "1.0.0"

        _commit(repo, "fix: small")
        assert manager.pending_messages() == ["fix: small"]
        assert manager.recommend_version().recommended_version == "1.0.1"

    def test_explicit_version(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _commit(repo, "fix: typo")
        manager = ReleaseManager(repo)
        release = manager.create_release(version="2.0.0", created_by="release-bot")
        assert release.version == "2.0.0"
        assert release.created_by == "release-bot"
        with pytest.raises(ValidationError):
            manager.create_release(version="1.0.0")
        assert manager.current_version() == "2.0.0"

    def test_release_before_first_commit(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        release = ReleaseManager(repo).create_release(version_type="MINOR")
        assert release.version == "0.1.0"
        assert release.snapshot_commit_id is None
        assert "commit=" not in (repo.vcs_dir / "RELEASE").read_text()
