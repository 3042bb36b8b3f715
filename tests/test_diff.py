from datetime import datetime, timezone

from conftest import code
from scriptflow.diff import (
    compute_diff,
    describe_local_files,
    describe_remote_files,
    detect_drift,
    exclude_descriptors,
    format_summary,
    module_options,
)
from scriptflow.filters import build_sync_filter
from scriptflow.fingerprint import git_blob_hash
from scriptflow.models import FileKind, RemoteFile, SyncDirection, SyncManifest
from scriptflow.module_wrapper import wrap
from scriptflow.scanner import LocalScriptFile


BOOTSTRAP = SyncManifest(resource_id=None, exists=False)


def local(name: str, content: str, kind: FileKind = FileKind.CODE) -> LocalScriptFile:
    return LocalScriptFile(
        local_path=f"{name}{kind.local_extension}",
        name=name,
        kind=kind,
        content=content,
        last_modified=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def paths(descriptors) -> list[str]:
    return [descriptor.path for descriptor in descriptors]


def test_bootstrap_never_deletes():
    source = describe_local_files([local("A", "a"), local("B", "b")])
    dest = describe_remote_files([code("B", wrap("b", "B")), code("C", wrap("c", "C"))])

    diff = compute_diff(SyncDirection.PUSH, source, dest, BOOTSTRAP)

    assert paths(diff.add) == ["A"]
    assert diff.unchanged == ["B"]
    assert diff.untouched == ["C"]
    assert diff.delete == []
    assert not diff.has_destructive_changes


def test_incremental_sync_deletes_only_baseline_files():
    source = describe_remote_files([code("A", "a")])
    dest = describe_remote_files([code("A", "a"), code("Gone", "g"), code("Mine", "m")])
    manifest = SyncManifest(
        resource_id="proj1",
        exists=True,
        baseline_hashes={"A": git_blob_hash("a"), "Gone": git_blob_hash("g")},
    )

    diff = compute_diff(SyncDirection.PULL, source, dest, manifest)

    assert paths(diff.delete) == ["Gone"]
    assert diff.untouched == ["Mine"]
    assert diff.has_destructive_changes
    assert diff.total_operations == 1


def test_changed_content_is_an_update_and_lists_are_sorted():
    source = describe_remote_files([code("z", "new"), code("a", "new"), code("m", "same")])
    dest = describe_remote_files([code("z", "old"), code("a", "old"), code("m", "same")])

    diff = compute_diff(SyncDirection.PULL, source, dest, BOOTSTRAP)

    assert paths(diff.update) == ["a", "z"]
    assert diff.unchanged == ["m"]
    assert diff.destination_hashes["z"] == git_blob_hash("old")


def test_module_option_change_is_an_update():
    source = describe_remote_files([code("Lib", wrap("const x = 1;", "Lib", {"loadNow": True}))])
    dest = describe_local_files([local("Lib", wrap("const x = 1;", "Lib"))])

    diff = compute_diff(SyncDirection.PULL, source, dest, BOOTSTRAP)

    assert paths(diff.update) == ["Lib"]
    assert diff.update[0].display_content == "const x = 1;"


def test_local_code_is_compared_in_wire_form():
    source = describe_local_files([local("Lib", "const x = 1;")])
    dest = describe_remote_files([code("Lib", wrap("const x = 1;", "Lib"))])

    diff = compute_diff(SyncDirection.PUSH, source, dest, BOOTSTRAP)

    assert diff.unchanged == ["Lib"]
    assert not diff.has_changes


def test_markup_and_manifest_are_not_wrapped():
    files = describe_local_files([local("index", "<p/>", FileKind.MARKUP), local("appsscript", "{}", FileKind.DATA)])
    assert [d.content for d in files] == ["<p/>", "{}"]


def test_exclusions_drop_system_and_pattern_matches():
    descriptors = describe_remote_files(
        [
            code("Code", "a"),
            code("__mcp_exec", "b"),
            code("CommonJS", "c"),
            code("vendor/lib", "d"),
            RemoteFile("appsscript", FileKind.DATA, "{}"),
        ]
    )

    kept = exclude_descriptors(descriptors, build_sync_filter(["vendor/"], skip_system=True))

    assert paths(kept) == ["Code", "appsscript"]


def test_exclusions_match_local_forms_on_both_sides():
    sync_filter = build_sync_filter(["helpers.js", "appsscript.json"])
    remote = describe_remote_files(
        [code("helpers", "a"), code("Code", "b"), RemoteFile("appsscript", FileKind.DATA, "{}")]
    )
    local_files = [local("helpers", "a"), local("Code", "b"), local("appsscript", "{}", FileKind.DATA)]
    local_files[0].local_path = "helpers.js"

    assert paths(exclude_descriptors(remote, sync_filter)) == ["Code"]
    assert paths(exclude_descriptors(describe_local_files(local_files), sync_filter)) == ["Code"]


def test_local_code_takes_remote_module_options():
    options = {"Lib": {"loadNow": True}}
    dest = describe_remote_files([code("Lib", wrap("const x = 1;", "Lib", options["Lib"]))])

    source = describe_local_files([local("Lib", "const x = 1;")], module_options(dest))

    assert module_options(dest) == options
    assert not compute_diff(SyncDirection.PUSH, source, dest, BOOTSTRAP).has_changes


def test_drift_detects_changes_since_planning():
    source = describe_remote_files([code("A", "a1"), code("B", "b1")])
    dest = describe_remote_files([code("B", "b0")])
    diff = compute_diff(SyncDirection.PULL, source, dest, BOOTSTRAP)

    assert not detect_drift(diff, source, dest).has_drift

    moved_source = describe_remote_files([code("A", "a2"), code("B", "b1")])
    moved_dest = describe_remote_files([code("B", "b9")])
    report = detect_drift(diff, moved_source, moved_dest)

    assert report.has_drift
    assert report.drifted == ["A", "B"]


def test_summary_text():
    source = describe_remote_files([code("A", "a"), code("B", "b")])
    dest = describe_remote_files([code("B", "old"), code("C", "c")])

    diff = compute_diff(SyncDirection.PULL, source, dest, BOOTSTRAP)
    in_sync = compute_diff(SyncDirection.PUSH, source, source, BOOTSTRAP)

    assert format_summary(diff, SyncDirection.PULL) == (
        "pull: 1 to add, 1 to update, 0 to delete (1 destination-only left untouched)"
    )
    assert format_summary(in_sync, SyncDirection.PUSH) == "push: already in sync (2 unchanged)"
