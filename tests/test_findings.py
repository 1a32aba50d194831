"""
Tests for the findings sync engine.
"""

import json

import pytest
from conftest import drain

from annosync.analysis.report import (
    AnalysisReport,
    AnalysisResult,
    Diagnostic,
    Position,
    ResultExtra,
)
from annosync.file_handler import WorkspaceDocuments
from annosync.sync.findings import (
    BATCH_EPSILON,
    FindingSyncEngine,
    migrate_legacy_flag,
    render_message,
)
from annosync.sync.models import FindingFlag, FindingRecord
from annosync.sync.remote import RemoteStore

FINDINGS = "diagnostics_p1"

SOURCE = "".join(f"line number {i} of the module\n" for i in range(20))


def _finding(
    finding_id,
    created=100.0,
    flag=FindingFlag.UNFLAGGED,
    flag_ts=100.0,
    message="Hard-coded secret",
):
    return FindingRecord(
        id=finding_id,
        diagnostic=Diagnostic(message=message, severity="ERROR").to_json(),
        flag=flag,
        flag_timestamp=flag_ts,
        file_path="main.tf",
        timestamp_created=created,
    )


def _ids(findings):
    return sorted(f.id for f in findings)


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    (root / "main.tf").write_text(SOURCE)
    return WorkspaceDocuments(root)


@pytest.fixture
async def engine(local_store, ready_remote, workspace):
    counter = iter(range(1, 1000))
    engine = FindingSyncEngine(
        local_store,
        ready_remote,
        workspace,
        clock=lambda: 200.0,
        id_factory=lambda: f"f{next(counter)}",
    )
    yield engine
    await engine.dispose()


class TestLegacyFlags:
    @pytest.mark.parametrize(
        "icon, flag",
        [
            ("🆕", FindingFlag.UNFLAGGED),
            ("❌", FindingFlag.FALSE_POSITIVE),
            ("🔥", FindingFlag.HOT),
            ("✅", FindingFlag.RESOLVED),
        ],
    )
    def test_icon_becomes_flag(self, icon, flag):
        """The icon is stripped from the message and stored as the flag."""
        migrated = migrate_legacy_flag(_finding("a", message=f"{icon} Leak"))
        assert migrated.flag is flag
        assert json.loads(migrated.diagnostic)["message"] == "Leak"

    def test_explicit_flag_wins(self):
        """A finding already flagged keeps its flag, but loses the icon."""
        finding = _finding("a", flag=FindingFlag.RESOLVED, message="🔥 Leak")
        migrated = migrate_legacy_flag(finding)
        assert migrated.flag is FindingFlag.RESOLVED
        assert json.loads(migrated.diagnostic)["message"] == "Leak"

    def test_plain_message_unchanged(self):
        finding = _finding("a")
        assert migrate_legacy_flag(finding) is finding

    def test_unparseable_diagnostic_unchanged(self):
        finding = _finding("a").model_copy(update={"diagnostic": "not json"})
        assert migrate_legacy_flag(finding) is finding

    def test_render_message(self):
        assert render_message("Leak", FindingFlag.HOT) == "🔥 Leak"

    async def test_start_migrates_local_findings(
        self, engine, local_store
    ):
        """Starting the engine rewrites legacy rows once."""
        local_store.create_or_replace_findings(
            [_finding("a", message="❌ Leak")]
        )
        await engine.start()
        await engine.runner.wait_idle()
        (stored,) = local_store.list_findings()
        assert stored.flag is FindingFlag.FALSE_POSITIVE
        assert json.loads(stored.diagnostic)["message"] == "Leak"


class TestLocalOperations:
    def _report(self, *lines):
        return AnalysisReport(
            results=[
                AnalysisResult(
                    path="./main.tf",
                    start=Position(line=line),
                    end=Position(line=line),
                    extra=ResultExtra(message=f"issue at {line}"),
                )
                for line in lines
            ]
        )

    async def test_load_report_replaces_findings(self, engine, local_store):
        """A full load replaces the stored batch."""
        local_store.create_or_replace_findings([_finding("old")])
        created = await engine.load_report(self._report(3, 8))
        await engine.runner.wait_idle()
        assert _ids(created) == ["f1", "f2"]
        assert _ids(local_store.list_findings()) == ["f1", "f2"]
        assert all(f.timestamp_created == 200.0 for f in created)

    async def test_incremental_load_keeps_existing(self, engine, local_store):
        local_store.create_or_replace_findings([_finding("old")])
        await engine.load_report(self._report(3), incremental=True)
        await engine.runner.wait_idle()
        assert _ids(local_store.list_findings()) == ["f1", "old"]

    async def test_list_findings_places_lines(self, engine, workspace):
        """Report lines are 1-based; views are 0-based and follow edits."""
        await engine.load_report(self._report(3))
        await engine.runner.wait_idle()
        (workspace.root / "main.tf").write_text("# added\n" + SOURCE)
        (view,) = await engine.list_findings()
        assert view.file_path == "main.tf"
        assert view.line == 3
        assert view.message == "🆕 issue at 3"

    async def test_flag_finding(self, engine, local_store):
        local_store.create_or_replace_findings([_finding("a")])
        assert await engine.flag_finding("a", FindingFlag.HOT)
        (stored,) = local_store.list_findings()
        assert stored.flag is FindingFlag.HOT
        assert stored.flag_timestamp == 200.0
        assert not await engine.flag_finding("missing", FindingFlag.HOT)

    async def test_delete_finding_removes_remote_copy(
        self, engine, local_store, ready_remote, fake_client
    ):
        await ready_remote.push_findings([_finding("a"), _finding("b")])
        local_store.create_or_replace_findings([_finding("a"), _finding("b")])
        await engine.delete_finding("a")
        assert _ids(local_store.list_findings()) == ["b"]
        assert [d["id"] for d in fake_client.documents(FINDINGS)] == ["b"]

    async def test_clear_findings(
        self, engine, local_store, ready_remote, fake_client
    ):
        await ready_remote.push_findings([_finding("a")])
        local_store.create_or_replace_findings([_finding("a")])
        await engine.clear_findings()
        assert local_store.list_findings() == []
        assert fake_client.documents(FINDINGS) == []


class TestReconcile:
    async def test_both_empty(self, engine):
        report = await engine.reconcile()
        assert report.pushed == 0 and report.pulled == 0

    async def test_local_only_is_pushed(self, engine, local_store, fake_client):
        local_store.create_or_replace_findings([_finding("a"), _finding("b")])
        report = await engine.reconcile()
        assert report.pushed == 2
        assert sorted(d["id"] for d in fake_client.documents(FINDINGS)) == [
            "a",
            "b",
        ]

    async def test_remote_only_is_pulled(self, engine, local_store, ready_remote):
        await ready_remote.push_findings([_finding("a")])
        report = await engine.reconcile()
        assert report.created_local == 1
        assert _ids(local_store.list_findings()) == ["a"]

    async def test_newer_remote_batch_replaces_local(
        self, engine, local_store, ready_remote
    ):
        local_store.create_or_replace_findings([_finding("old", created=100.0)])
        await ready_remote.push_findings(
            [_finding("new", created=100.0 + BATCH_EPSILON + 1)]
        )
        await engine.reconcile()
        assert _ids(local_store.list_findings()) == ["new"]

    async def test_newer_local_batch_replaces_remote(
        self, engine, local_store, ready_remote, fake_client
    ):
        local_store.create_or_replace_findings([_finding("new", created=300.0)])
        await ready_remote.push_findings([_finding("old", created=100.0)])
        await engine.reconcile()
        assert [d["id"] for d in fake_client.documents(FINDINGS)] == ["new"]

    async def test_same_batch_merges_flags(
        self, engine, local_store, ready_remote, fake_client
    ):
        """Within a batch the newer flag wins on each side, and a finding
        missing remotely is dropped locally."""
        local_store.create_or_replace_findings(
            [
                _finding("a", flag=FindingFlag.HOT, flag_ts=150.0),
                _finding("b", flag_ts=100.0),
                _finding("c", created=100.2),
            ]
        )
        await ready_remote.push_findings(
            [
                _finding("a", flag_ts=100.0),
                _finding("b", flag=FindingFlag.RESOLVED, flag_ts=160.0),
                _finding("d", created=99.9),
            ]
        )
        report = await engine.reconcile()

        local = {f.id: f for f in local_store.list_findings()}
        assert sorted(local) == ["a", "b", "d"]
        assert local["a"].flag is FindingFlag.HOT
        assert local["b"].flag is FindingFlag.RESOLVED
        assert local["b"].flag_timestamp == 160.0

        remote = {d["id"]: d for d in fake_client.documents(FINDINGS)}
        assert sorted(remote) == ["a", "b", "d"]
        assert remote["a"]["flag"] == int(FindingFlag.HOT)
        assert report.updated_local == 1
        assert report.created_local == 1
        assert report.deleted_local == 1
        assert report.pushed == 1

    async def test_remote_legacy_icons_are_migrated(
        self, engine, local_store, ready_remote
    ):
        await ready_remote.push_findings([_finding("a", message="✅ Fixed")])
        await engine.reconcile()
        (stored,) = local_store.list_findings()
        assert stored.flag is FindingFlag.RESOLVED

    async def test_skipped_when_not_ready(self, local_store, fake_client, workspace):
        remote = RemoteStore(fake_client, expire_after_seconds=0)
        engine = FindingSyncEngine(local_store, remote, workspace)
        local_store.create_or_replace_findings([_finding("a")])
        report = await engine.reconcile()
        assert report.skipped == "remote not ready"
        assert fake_client.documents(FINDINGS) == []

    async def test_remote_change_triggers_pass(
        self, engine, fake_client, local_store
    ):
        """Findings written by another client arrive without a request."""
        other = RemoteStore(fake_client, expire_after_seconds=0)
        await other.bind_project("p1")
        await other.enable()
        await engine.start()
        await engine.runner.wait_idle()
        await other.push_findings([_finding("x")])
        await drain()
        await engine.runner.wait_idle()
        assert _ids(local_store.list_findings()) == ["x"]
        await other.disable()


class TestPeerChanges:
    """A second client writing the same project's findings."""

    @pytest.fixture
    async def peer(self, fake_client):
        peer = RemoteStore(fake_client, expire_after_seconds=0)
        await peer.bind_project("p1")
        await peer.enable()
        yield peer
        await peer.disable()

    @pytest.fixture
    async def synced(self, engine, local_store):
        """Both sides hold findings a and b, and the engine follows the feed."""
        local_store.create_or_replace_findings([_finding("a"), _finding("b")])
        await engine.start()
        await engine.runner.wait_idle()
        return engine

    async def test_peer_deletion_converges(
        self, synced, peer, local_store, fake_client
    ):
        """A finding deleted by the peer disappears here and stays deleted."""
        assert sorted(d["id"] for d in fake_client.documents(FINDINGS)) == ["a", "b"]
        await peer.delete_findings(["a"])
        await drain()
        await synced.runner.wait_idle()
        assert _ids(local_store.list_findings()) == ["b"]
        assert sorted(d["id"] for d in fake_client.documents(FINDINGS)) == ["b"]

    async def test_peer_newer_batch_replaces_local(
        self, synced, peer, local_store, fake_client
    ):
        """Findings uploaded later by the peer make the remote batch newer,
        so it replaces the local one."""
        local_store.create_or_replace_findings([_finding("c")])
        await peer.push_findings(
            [_finding("n1", created=300.0), _finding("n2", created=300.0)],
            clear_remote=False,
        )
        await drain()
        await synced.runner.wait_idle()
        assert _ids(local_store.list_findings()) == ["a", "b", "n1", "n2"]
        assert sorted(d["id"] for d in fake_client.documents(FINDINGS)) == [
            "a",
            "b",
            "n1",
            "n2",
        ]

    async def test_peer_flag_reaches_local(self, synced, peer, local_store):
        await peer.push_findings(
            [_finding("a", flag=FindingFlag.HOT, flag_ts=180.0)],
            clear_remote=False,
        )
        await drain()
        await synced.runner.wait_idle()
        local = {f.id: f for f in local_store.list_findings()}
        assert sorted(local) == ["a", "b"]
        assert local["a"].flag is FindingFlag.HOT
