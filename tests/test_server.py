"""Tests for the sync server: refs, history, objects, push, releases, and
branch, permission, and token administration."""

from __future__ import annotations

import base64

import pytest

from chronovcs.errors import (
    BranchExistsError,
    CommitNotFoundError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PushConflictError,
    RefNotFoundError,
    RepositoryExistsError,
    RepositoryNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from chronovcs.release.models import CreateReleaseRequest
from chronovcs.release.semver import VersionType
from chronovcs.security.audit import AuditLogger
from chronovcs.security.hasher import Hasher
from chronovcs.sync.models import Credential, Identity, PermissionSet, PushRequest
from chronovcs.sync.server import SyncServer
from chronovcs.sync.store import ServerStore
from chronovcs.vcs.commits import build_commit

AUTHOR = "Ada <ada@example.com>"
OWNER = Identity(user_id="owner", email="owner@example.com")
BOB = Identity(user_id="bob", email="bob@example.com")
SESSION = Credential.session()


def _server(**repo_options) -> SyncServer:
    server = SyncServer(audit=AuditLogger(":memory:"))
    server.create_repository(OWNER, "proj", **repo_options)
    return server


def _push_request(
    files: dict[str, bytes],
    message: str,
    base: str | None = None,
    branch: str = "main",
) -> PushRequest:
    manifest = {path: Hasher.hash_bytes(data) for path, data in files.items()}
    commit = build_commit(manifest, message, AUTHOR, branch, parent=base)
    blobs = {Hasher.hash_bytes(data): base64.b64encode(data).decode("ascii") for data in files.values()}
    return PushRequest(branch=branch, base_commit_id=base, new_commit=commit, blobs=blobs)


def _push_chain(server: SyncServer, count: int, branch: str = "main") -> list[str]:
    ids: list[str] = []
    base = None
    for i in range(count):
        request = _push_request({"a.txt": f"v{i}\n".encode()}, f"commit {i}", base, branch)
        base = server.push(OWNER, SESSION, "proj", request).new_head_commit_id
        ids.append(base)
    return ids


# ---------------------------------------------------------------------------
# Repository setup and handshake
# ---------------------------------------------------------------------------


class TestRepositorySetup:
    def test_duplicate_repository(self):
        server = _server()
        with pytest.raises(RepositoryExistsError):
            server.create_repository(OWNER, "proj")

    def test_blank_key(self):
        with pytest.raises(ValidationError):
            SyncServer().create_repository(OWNER, "  ")

    def test_unknown_repository(self):
        with pytest.raises(RepositoryNotFoundError):
            _server().get_refs(OWNER, SESSION, "ghost")

    def test_repository_removed_after_permission_check(self, monkeypatch):
        server = _server()
        real = server.store.get_repository
        calls = []

        def vanishing(repo_key):
            calls.append(repo_key)
            return real(repo_key) if len(calls) == 1 else None

        monkeypatch.setattr(server.store, "get_repository", vanishing)
        with pytest.raises(RepositoryNotFoundError):
            server.get_refs(OWNER, SESSION, "proj")

    def test_handshake_owner(self):
        response = _server(description="demo").handshake(OWNER, SESSION, "proj")
        assert response.success
        assert response.user.id == "owner"
        assert response.repository.repo_key == "proj"
        assert response.repository.description == "demo"
        assert response.permissions == PermissionSet.allow_all()

    def test_handshake_stranger(self):
        response = _server().handshake(BOB, SESSION, "proj")
        assert not response.success
        assert response.repository is None
        assert response.permissions == PermissionSet.deny_all()

    def test_handshake_wire_shape(self):
        wire = _server().handshake(OWNER, SESSION, "proj").to_wire()
        assert wire["repository"]["repoKey"] == "proj"
        assert wire["repository"]["defaultBranch"] == "main"
        assert wire["permissions"]["canPush"] is True


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class TestPush:
    def test_first_push_creates_branch(self):
        server = _server()
        request = _push_request({"a.txt": b"hello\n"}, "initial")
        result = server.push(OWNER, SESSION, "proj", request)
        assert result.fast_forward
        assert result.new_head_commit_id == request.new_commit.id
        assert server.get_refs(OWNER, SESSION, "proj").branches == {"main": request.new_commit.id}

    def test_stale_base_rejected(self):
        server = _server()
        first, second = _push_chain(server, 2)
        stale = _push_request({"a.txt": b"other\n"}, "late", base=first)
        with pytest.raises(PushConflictError) as info:
            server.push(OWNER, SESSION, "proj", stale)
        assert info.value.actual == second
        assert server.store.branch_head("proj", "main") == second

    def test_stale_base_rejected_even_when_payload_invalid(self):
        server = _server()
        first, _ = _push_chain(server, 2)
        request = _push_request({"a.txt": b"x"}, "late", base=first)
        request = request.model_copy(update={"blobs": {}})
        with pytest.raises(PushConflictError):
            server.push(OWNER, SESSION, "proj", request)

    def test_push_to_empty_branch_with_base_rejected(self):
        server = _server()
        request = _push_request({"a.txt": b"x"}, "orphan", base="a" * 64)
        with pytest.raises(PushConflictError):
            server.push(OWNER, SESSION, "proj", request)

    def test_parent_must_match_base(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        request = _push_request({"a.txt": b"x"}, "wrong parent", base=None)
        request = request.model_copy(update={"base_commit_id": head})
        with pytest.raises(ValidationError):
            server.push(OWNER, SESSION, "proj", request)

    def test_tampered_commit_id(self):
        server = _server()
        request = _push_request({"a.txt": b"x"}, "msg")
        forged = request.new_commit.model_copy(update={"message": "changed"})
        with pytest.raises(ValidationError):
            server.push(OWNER, SESSION, "proj", request.model_copy(update={"new_commit": forged}))

    def test_blob_must_hash_to_key(self):
        server = _server()
        request = _push_request({"a.txt": b"x"}, "msg")
        digest = next(iter(request.blobs))
        bad = {digest: base64.b64encode(b"not x").decode("ascii")}
        with pytest.raises(ValidationError):
            server.push(OWNER, SESSION, "proj", request.model_copy(update={"blobs": bad}))
        assert server.store.branch_head("proj", "main") is None

    def test_missing_blob(self):
        server = _server()
        request = _push_request({"a.txt": b"x"}, "msg").model_copy(update={"blobs": {}})
        with pytest.raises(ValidationError):
            server.push(OWNER, SESSION, "proj", request)

    def test_known_blobs_need_not_be_resent(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        request = _push_request({"a.txt": b"v0\n", "b.txt": b"b"}, "add b", base=head)
        request = request.model_copy(update={
            "blobs": {Hasher.hash_bytes(b"b"): base64.b64encode(b"b").decode("ascii")},
        })
        assert server.push(OWNER, SESSION, "proj", request).new_head_commit_id == request.new_commit.id

    def test_invalid_branch_name(self):
        server = _server()
        with pytest.raises(ValidationError):
            server.push(OWNER, SESSION, "proj", _push_request({"a": b"a"}, "m", branch="bad name"))

    def test_push_requires_capability(self):
        server = _server()
        server.store.upsert_user_permission("proj", "bob", PermissionSet(can_read=True, can_pull=True))
        with pytest.raises(PermissionDeniedError):
            server.push(BOB, SESSION, "proj", _push_request({"a.txt": b"x"}, "msg"))

    def test_object_mode_rejects_push(self):
        server = _server(versioning_mode="object")
        with pytest.raises(ValidationError):
            server.push(OWNER, SESSION, "proj", _push_request({"a.txt": b"x"}, "msg"))

    def test_release_mode_protects_default_branch(self):
        server = _server(release_enabled=True)
        (head,) = _push_chain(server, 1)
        server.store.upsert_user_permission(
            "proj", "bob",
            PermissionSet(can_read=True, can_pull=True, can_push=True, can_create_branch=True),
        )
        request = _push_request({"a.txt": b"next"}, "next", base=head)
        with pytest.raises(PermissionDeniedError) as info:
            server.push(BOB, SESSION, "proj", request)
        assert info.value.capability == "can_bypass_task_policy"

        feature = _push_request({"a.txt": b"f"}, "feature work", branch="feature")
        assert server.push(BOB, SESSION, "proj", feature).branch == "feature"

    def test_push_is_audited(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        entries = server.audit.get_log(action="push")
        assert len(entries) == 1
        assert entries[0].after_id == head
        assert server.audit.verify_chain()

    def test_new_branch_push_needs_create_capability(self):
        server = _server()
        _push_chain(server, 1)
        server.store.upsert_user_permission(
            "proj", "bob", PermissionSet(can_read=True, can_pull=True, can_push=True),
        )
        feature = _push_request({"a.txt": b"f"}, "feature work", branch="feature")
        with pytest.raises(PermissionDeniedError) as info:
            server.push(BOB, SESSION, "proj", feature)
        assert info.value.capability == "can_create_branch"
        assert not server.store.has_branch("proj", "feature")

    def test_default_branch_exists_before_first_push(self):
        server = _server()
        server.store.upsert_user_permission(
            "proj", "bob", PermissionSet(can_read=True, can_pull=True, can_push=True),
        )
        result = server.push(BOB, SESSION, "proj", _push_request({"a.txt": b"x"}, "initial"))
        assert result.branch == "main"

    def test_servers_sharing_a_database_cannot_both_win(self, tmp_path, monkeypatch):
        db = tmp_path / "server.db"
        first, second = SyncServer(ServerStore(db)), SyncServer(ServerStore(db))
        try:
            first.create_repository(OWNER, "proj")
            winner = _push_request({"a.txt": b"second\n"}, "from second server")
            second.push(OWNER, SESSION, "proj", winner)

            # first server read the head before the other push landed
            monkeypatch.setattr(first.store, "branch_head", lambda *args: None)
            loser = _push_request({"a.txt": b"first\n"}, "from first server")
            with pytest.raises(PushConflictError) as info:
                first.push(OWNER, SESSION, "proj", loser)

            assert info.value.actual == winner.new_commit.id
            assert second.store.branch_head("proj", "main") == winner.new_commit.id
            assert second.store.get_commit("proj", loser.new_commit.id) is None
            assert second.store.existing_blobs("proj", loser.new_commit.files.values()) == set()
        finally:
            first.store.close()
            second.store.close()

    def test_store_rejects_stale_expected_head(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        orphan = _push_request({"a.txt": b"o"}, "orphan").new_commit
        with pytest.raises(PushConflictError) as info:
            server.store.apply_push("proj", "main", None, orphan, {})
        assert info.value.actual == head
        assert server.store.get_commit("proj", orphan.id) is None


# ---------------------------------------------------------------------------
# Refs, history, objects
# ---------------------------------------------------------------------------


class TestReadPaths:
    def test_history_newest_first(self):
        server = _server()
        ids = _push_chain(server, 3)
        response = server.get_commit_history(OWNER, SESSION, "proj", "main")
        assert [c.id for c in response.commits] == list(reversed(ids))
        assert not response.has_more

    def test_history_pagination(self):
        server = _server()
        ids = _push_chain(server, 3)
        page = server.get_commit_history(OWNER, SESSION, "proj", "main", limit=2)
        assert [c.id for c in page.commits] == [ids[2], ids[1]]
        assert page.has_more
        rest = server.get_commit_history(OWNER, SESSION, "proj", "main", limit=2, from_commit=ids[0])
        assert [c.id for c in rest.commits] == [ids[0]]
        assert not rest.has_more

    def test_history_since_commit(self):
        server = _server()
        ids = _push_chain(server, 3)
        response = server.get_commit_history(OWNER, SESSION, "proj", "main", since_commit=ids[0])
        assert [c.id for c in response.commits] == [ids[2], ids[1]]

    def test_history_unknown_branch(self):
        server = _server()
        _push_chain(server, 1)
        with pytest.raises(RefNotFoundError):
            server.get_commit_history(OWNER, SESSION, "proj", "ghost")

    def test_batch_objects_omit_unknown(self):
        server = _server()
        _push_chain(server, 1)
        known = Hasher.hash_bytes(b"v0\n")
        unknown = Hasher.hash_bytes(b"never pushed")
        response = server.get_batch_objects(OWNER, SESSION, "proj", [known, unknown])
        assert set(response.objects) == {known}
        assert base64.b64decode(response.objects[known]) == b"v0\n"

    def test_reads_need_capabilities(self):
        server = _server()
        server.store.upsert_user_permission("proj", "bob", PermissionSet(can_read=True))
        assert server.get_refs(BOB, SESSION, "proj").default_branch == "main"
        with pytest.raises(PermissionDeniedError):
            server.get_commit_history(BOB, SESSION, "proj", "main")
        with pytest.raises(PermissionDeniedError):
            server.get_batch_objects(BOB, SESSION, "proj", [])


# ---------------------------------------------------------------------------
# Releases
# ---------------------------------------------------------------------------


class TestServerReleases:
    def test_recommend_from_default_branch(self):
        server = _server()
        base = None
        for message in ("fix: one", "feat: two"):
            request = _push_request({"a.txt": message.encode()}, message, base)
            base = server.push(OWNER, SESSION, "proj", request).new_head_commit_id
        recommendation = server.recommend_version(OWNER, SESSION, "proj")
        assert recommendation.current_version == "0.0.0"
        assert recommendation.version_type is VersionType.MINOR
        assert recommendation.recommended_version == "0.1.0"
        assert recommendation.reason == "1 new feature(s) added"

    def test_auto_release_defaults_to_minor(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        release = server.create_release(OWNER, SESSION, "proj", CreateReleaseRequest())
        assert release.version == "0.1.0"
        assert release.version_type is VersionType.MINOR
        assert release.snapshot_commit_id == head
        assert release.created_by == "owner@example.com"
        assert release.id is not None

    def test_duplicate_version_conflicts(self):
        server = _server()
        _push_chain(server, 1)
        server.create_release(OWNER, SESSION, "proj", CreateReleaseRequest(version="1.0.0"))
        with pytest.raises(ConflictError):
            server.create_release(OWNER, SESSION, "proj", CreateReleaseRequest(version="1.0.0"))

    def test_explicit_version_must_increase(self):
        server = _server()
        server.create_release(OWNER, SESSION, "proj", CreateReleaseRequest(version="2.0.0"))
        with pytest.raises(ValidationError):
            server.create_release(OWNER, SESSION, "proj", CreateReleaseRequest(version="1.5.0"))

    def test_releases_listed_newest_first(self):
        server = _server()
        server.create_release(OWNER, SESSION, "proj", CreateReleaseRequest(version_type=VersionType.PATCH))
        server.create_release(OWNER, SESSION, "proj", CreateReleaseRequest(version_type=VersionType.MAJOR))
        versions = [r.version for r in server.list_releases(OWNER, SESSION, "proj")]
        assert versions == ["1.0.0", "0.0.1"]

    def test_recommend_after_release_counts_new_commits(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        server.create_release(OWNER, SESSION, "proj", CreateReleaseRequest(version="1.0.0"))
        request = _push_request({"a.txt": b"fix"}, "fix: after release", head)
        server.push(OWNER, SESSION, "proj", request)
        recommendation = server.recommend_version(OWNER, SESSION, "proj")
        assert recommendation.current_version == "1.0.0"
        assert recommendation.breakdown == {"MAJOR": 0, "MINOR": 0, "PATCH": 1}

    def test_release_requires_tag_capability(self):
        server = _server()
        server.store.upsert_user_permission("proj", "bob", PermissionSet(can_read=True))
        with pytest.raises(PermissionDeniedError):
            server.create_release(BOB, SESSION, "proj", CreateReleaseRequest())


# ---------------------------------------------------------------------------
# Permission administration
# ---------------------------------------------------------------------------


class TestPermissionAdmin:
    def test_upsert_list_delete(self):
        server = _server()
        server.upsert_permission(OWNER, SESSION, "proj", "bob", PermissionSet(can_read=True))
        rows = server.list_permissions(OWNER, SESSION, "proj")
        assert [(r.user_id, r.owner) for r in rows] == [("owner", True), ("bob", False)]

        assert server.get_permission(OWNER, SESSION, "proj", "bob").permissions.can_read
        assert server.delete_permission(OWNER, SESSION, "proj", "bob") is True
        assert server.delete_permission(OWNER, SESSION, "proj", "bob") is False
        assert server.get_permission(OWNER, SESSION, "proj", "bob").permissions == PermissionSet.deny_all()

    def test_admin_requires_manage_capability(self):
        server = _server()
        server.store.upsert_user_permission("proj", "bob", PermissionSet(can_read=True, can_push=True))
        with pytest.raises(PermissionDeniedError):
            server.upsert_permission(BOB, SESSION, "proj", "bob", PermissionSet.allow_all())

    def test_token_grant_takes_effect(self):
        server = _server()
        server.upsert_permission(OWNER, SESSION, "proj", "bob", PermissionSet.allow_all())
        granted = server.grant_token_permission(BOB, SESSION, "proj", "tok", PermissionSet(can_read=True))
        assert granted.user_id == "bob"
        response = server.handshake(BOB, Credential.token("tok"), "proj")
        assert response.permissions == PermissionSet(can_read=True)

    def test_admin_changes_are_audited(self):
        server = _server()
        server.upsert_permission(OWNER, SESSION, "proj", "bob", PermissionSet(can_read=True))
        server.delete_permission(OWNER, SESSION, "proj", "bob")
        actions = [e.action for e in server.audit.get_log(repo_key="proj")]
        assert actions == ["permission.upsert", "permission.delete"]

    def test_token_grant_cannot_exceed_user_permissions(self):
        server = _server()
        server.upsert_permission(OWNER, SESSION, "proj", "bob", PermissionSet(can_read=True, can_pull=True))
        with pytest.raises(PermissionDeniedError) as info:
            server.grant_token_permission(
                BOB, SESSION, "proj", "tok", PermissionSet(can_read=True, can_push=True),
            )
        assert info.value.capability == "can_push"
        assert server.store.get_token_permission("tok", "proj") is None

    def test_token_grant_needs_repository_access(self):
        server = _server()
        with pytest.raises(UnauthorizedError):
            server.grant_token_permission(BOB, SESSION, "proj", "tok", PermissionSet())

    def test_other_users_token_is_not_found(self):
        server = _server()
        server.upsert_permission(OWNER, SESSION, "proj", "bob", PermissionSet(can_read=True))
        server.grant_token_permission(BOB, SESSION, "proj", "tok", PermissionSet(can_read=True))
        with pytest.raises(NotFoundError):
            server.grant_token_permission(OWNER, SESSION, "proj", "tok", PermissionSet.allow_all())
        with pytest.raises(NotFoundError):
            server.revoke_token_permission(OWNER, SESSION, "proj", "tok")
        with pytest.raises(NotFoundError):
            server.list_token_permissions(OWNER, "tok")
        assert server.store.get_token_permission("tok", "proj")[1] == PermissionSet(can_read=True)

    def test_scoped_token_cannot_widen_itself(self):
        server = _server()
        server.upsert_permission(OWNER, SESSION, "proj", "bob", PermissionSet(can_read=True, can_pull=True))
        server.grant_token_permission(BOB, SESSION, "proj", "tok", PermissionSet(can_read=True))
        with pytest.raises(PermissionDeniedError):
            server.grant_token_permission(
                BOB, Credential.token("tok"), "proj", "tok",
                PermissionSet(can_read=True, can_pull=True),
            )

    def test_revoke_falls_back_to_user_permissions(self):
        server = _server()
        bob_perms = PermissionSet(can_read=True, can_pull=True)
        server.upsert_permission(OWNER, SESSION, "proj", "bob", bob_perms)
        server.grant_token_permission(BOB, SESSION, "proj", "tok", PermissionSet(can_read=True))
        assert [t.repo_key for t in server.list_token_permissions(BOB, "tok")] == ["proj"]

        assert server.revoke_token_permission(BOB, SESSION, "proj", "tok") is True
        assert server.revoke_token_permission(BOB, SESSION, "proj", "tok") is False
        assert server.list_token_permissions(BOB, "tok") == []
        assert server.handshake(BOB, Credential.token("tok"), "proj").permissions == bob_perms
        actions = [e.action for e in server.audit.get_log(action="token.grant")]
        assert actions == ["token.grant"]


# ---------------------------------------------------------------------------
# Branch administration
# ---------------------------------------------------------------------------


class TestBranchAdmin:
    def test_create_from_default_head(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        branch = server.create_branch(OWNER, SESSION, "proj", "feature")
        assert branch.head_commit_id == head
        assert not branch.is_default
        assert server.get_refs(OWNER, SESSION, "proj").branches == {"main": head, "feature": head}

    def test_create_from_branch_or_commit(self):
        server = _server()
        first, second = _push_chain(server, 2)
        assert server.create_branch(OWNER, SESSION, "proj", "old", from_commit=first).head_commit_id == first
        copy = server.create_branch(OWNER, SESSION, "proj", "copy", from_branch="old")
        assert copy.head_commit_id == first
        with pytest.raises(RefNotFoundError):
            server.create_branch(OWNER, SESSION, "proj", "x", from_branch="ghost")
        with pytest.raises(CommitNotFoundError):
            server.create_branch(OWNER, SESSION, "proj", "y", from_commit="f" * 64)

    def test_create_existing_branch(self):
        server = _server()
        _push_chain(server, 1)
        with pytest.raises(BranchExistsError):
            server.create_branch(OWNER, SESSION, "proj", "main")

    def test_created_branch_accepts_pushes(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        server.create_branch(OWNER, SESSION, "proj", "feature")
        request = _push_request({"a.txt": b"f"}, "feature work", base=head, branch="feature")
        server.push(OWNER, SESSION, "proj", request)
        assert server.get_branch(OWNER, SESSION, "proj", "feature").head_commit_id == request.new_commit.id
        assert server.get_branch(OWNER, SESSION, "proj", "main").head_commit_id == head

    def test_list_and_get(self):
        server = _server()
        _push_chain(server, 1)
        server.create_branch(OWNER, SESSION, "proj", "feature")
        listed = server.list_branches(OWNER, SESSION, "proj")
        assert [(b.branch_name, b.is_default) for b in listed] == [("feature", False), ("main", True)]
        with pytest.raises(RefNotFoundError):
            server.get_branch(OWNER, SESSION, "proj", "ghost")

    def test_delete_branch(self):
        server = _server()
        (head,) = _push_chain(server, 1)
        server.create_branch(OWNER, SESSION, "proj", "feature")
        assert server.delete_branch(OWNER, SESSION, "proj", "feature").head_commit_id == head
        assert "feature" not in server.get_refs(OWNER, SESSION, "proj").branches
        with pytest.raises(RefNotFoundError):
            server.delete_branch(OWNER, SESSION, "proj", "feature")
        with pytest.raises(ValidationError):
            server.delete_branch(OWNER, SESSION, "proj", "main")

    def test_branch_admin_capabilities(self):
        server = _server()
        _push_chain(server, 1)
        server.create_branch(OWNER, SESSION, "proj", "feature")
        server.store.upsert_user_permission("proj", "bob", PermissionSet(can_read=True, can_push=True))
        assert len(server.list_branches(BOB, SESSION, "proj")) == 2
        with pytest.raises(PermissionDeniedError):
            server.create_branch(BOB, SESSION, "proj", "bob-branch")
        with pytest.raises(PermissionDeniedError):
            server.delete_branch(BOB, SESSION, "proj", "feature")

    def test_branch_changes_are_audited(self):
        server = _server()
        _push_chain(server, 1)
        server.create_branch(OWNER, SESSION, "proj", "feature")
        server.delete_branch(OWNER, SESSION, "proj", "feature")
        actions = [e.action for e in server.audit.get_log(repo_key="proj") if e.action.startswith("branch.")]
        assert actions == ["branch.create", "branch.delete"]
