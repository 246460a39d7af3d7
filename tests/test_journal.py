import pytest

from tern.core.models import PatchProposal
from tern.patch.diff import parse_unified_diff
from tern.patch.journal import FileChange, RevertJournal
from tern.patch.review import Severity, has_blocking_findings, review


def change(path: str, preimage: bytes | None = b"old\n") -> FileChange:
    hunks = tuple(parse_unified_diff(f"--- a/{path}\n+++ b/{path}\n@@ -1 +1 @@\n-old\n+new\n"))
    return FileChange(
        file_path=path,
        preimage_hash="pre" if preimage is not None else None,
        postimage_hash="post",
        preimage=preimage,
        hunks=hunks,
    )


class TestRevertJournal:
    def test_ids_increase_and_are_never_reused(self):
        journal = RevertJournal()
        first = journal.record("t1", [change("a.txt")])
        second = journal.record("t2", [change("b.txt")])
        journal.pop(second.id)
        third = journal.record("t3", [change("c.txt")])
        assert (first.id, second.id, third.id) == (1, 2, 3)

    def test_latest_is_newest_first(self):
        journal = RevertJournal()
        for i in range(4):
            journal.record(f"t{i}", [change("a.txt")])
        assert [r.id for r in journal.latest(2)] == [4, 3]
        assert [r.id for r in journal.latest(10)] == [4, 3, 2, 1]
        assert journal.latest(0) == []

    def test_pop_unknown(self):
        with pytest.raises(KeyError):
            RevertJournal().pop(1)

    def test_serialization_keeps_preimage_bytes(self):
        journal = RevertJournal()
        journal.record("t1", [change("bin.dat", b"\x00\xff\r\n"), change("new.txt", None)])
        journal.pop(journal.record("t2", [change("x")]).id)

        restored = RevertJournal.from_dict(journal.to_dict())

        assert restored.records == journal.records
        assert restored.records[0].files[0].preimage == b"\x00\xff\r\n"
        assert restored.records[0].files[1].preimage is None
        assert restored.next_id == 3

    def test_from_empty(self):
        journal = RevertJournal.from_dict(None)
        assert not journal
        assert journal.next_id == 1


class TestReview:
    def proposal(self, diff: str) -> PatchProposal:
        return PatchProposal(turn_id="t", hunks=parse_unified_diff(diff))

    def test_env_file_is_high(self):
        findings = review(self.proposal("--- /dev/null\n+++ b/.env\n@@ -0,0 +1 @@\n+DEBUG=1\n"))
        assert [(f.severity, f.file_path) for f in findings] == [(Severity.HIGH, ".env")]
        assert has_blocking_findings(findings)

    def test_rm_rf_is_high(self):
        findings = review(self.proposal("--- a/ci.sh\n+++ b/ci.sh\n@@ -1 +1 @@\n-make\n+rm -rf build/\n"))
        assert findings[0].severity is Severity.HIGH

    def test_medium_findings_do_not_block(self):
        findings = review(
            self.proposal("--- a/s.sh\n+++ b/s.sh\n@@ -1 +1,2 @@\n-x\n+chmod 777 out\n+API_KEY = 'abc'\n")
        )
        assert {f.message for f in findings} == {"chmod 777 detected", "Potential secret assignment in patch"}
        assert not has_blocking_findings(findings)

    def test_findings_are_deduplicated(self):
        findings = review(
            self.proposal(
                "--- a/.env.local\n+++ b/.env.local\n@@ -1 +1 @@\n-a\n+b\n@@ -5 +5 @@\n-c\n+d\n"
            )
        )
        assert len(findings) == 1

    def test_clean_patch(self):
        assert review(self.proposal("--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-x = 1\n+x = 2\n")) == []
