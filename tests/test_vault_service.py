"""Tests for the VaultService facade."""
import pytest

from notevault.exceptions import (
    EncryptionRequiredError,
    ErrorCode,
    InvalidPasswordError,
    NotFoundError,
)
from notevault.models.schema import NoteId
from notevault.observability import metrics


class TestNotesAndFolders:
    def test_create_note_with_initial_body(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan", "first draft")
        assert vault_service.get_note(plan).body == "first draft"
        versions = vault_service.list_versions(plan)
        assert [v.message for v in versions] == ["Created: Plan"]

    def test_create_empty_note_has_no_versions(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan")
        assert vault_service.list_versions(plan) == []

    def test_lookup_by_name(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan")
        assert vault_service.get_folder_by_name("Work").id == work
        assert vault_service.get_note_by_title(work, "Plan").id == plan
        with pytest.raises(NotFoundError):
            vault_service.get_folder_by_name("Nope")
        with pytest.raises(NotFoundError):
            vault_service.get_note_by_title(work, "Nope")

    def test_list_notes_in_insertion_order(self, vault_service):
        work = vault_service.create_folder("Work")
        home = vault_service.create_folder("Home")
        vault_service.create_note(home, "B")
        vault_service.create_note(work, "A")
        vault_service.create_note(work, "C")
        assert [n.title for n in vault_service.list_notes()] == ["A", "C", "B"]
        assert [n.title for n in vault_service.list_notes(home)] == ["B"]

    def test_favorites(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan")
        vault_service.create_note(work, "Budget")
        assert vault_service.toggle_favorite(plan) is True
        assert [n.id for n in vault_service.favorite_notes()] == [plan]
        assert vault_service.toggle_favorite(plan) is False
        assert vault_service.favorite_notes() == []


class TestEncryption:
    def test_save_with_password_then_decode(self, vault_service):
        work = vault_service.create_folder("Work")
        diary = vault_service.create_note(work, "Diary")
        vault_service.encrypt_note(diary, "secret123")
        vault_service.save_note(diary, "dear diary", password="secret123")

        with pytest.raises(InvalidPasswordError):
            vault_service.read_note(diary, "wrong")
        assert vault_service.read_note(diary, "secret123") == "dear diary"

        vault_service.decrypt_note(diary, "secret123")
        assert vault_service.read_note(diary) == "dear diary"


class TestTags:
    def test_tag_workflow(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan")
        budget = vault_service.create_note(work, "Budget")
        urgent = vault_service.create_tag("urgent")
        vault_service.add_tag_to_note(plan, urgent)
        vault_service.add_tag_to_note(budget, urgent)
        vault_service.remove_tag_from_note(budget, urgent)

        assert [n.id for n in vault_service.notes_with_tag(urgent)] == [plan]
        assert vault_service.get_tags_with_counts() == {"urgent": 1}
        assert [t.name for t in vault_service.list_tags()] == ["urgent"]

        vault_service.delete_tag(urgent)
        assert vault_service.list_tags() == []
        with pytest.raises(NotFoundError):
            vault_service.notes_with_tag(urgent)


class TestLinks:
    def test_backlinks_and_unresolved(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan", "refers to [[Budget]]")
        assert vault_service.unresolved_links(plan) == ["Budget"]

        budget = vault_service.create_note(work, "Budget")
        assert vault_service.unresolved_links(plan) == []
        assert vault_service.backlinks(budget) == [plan]
        assert vault_service.outgoing_links(plan) == {"Budget": budget}

    def test_links_of_unknown_note(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan")
        vault_service.delete_note(plan)
        for query in (
            vault_service.backlinks,
            vault_service.unresolved_links,
            vault_service.outgoing_links,
        ):
            with pytest.raises(NotFoundError) as exc_info:
                query(plan)
            assert exc_info.value.code == ErrorCode.NOTE_NOT_FOUND
        with pytest.raises(NotFoundError):
            vault_service.diff_versions(plan, 1, 2)

    def test_orphans_and_central_notes(self, vault_service):
        work = vault_service.create_folder("Work")
        hub = vault_service.create_note(work, "Hub")
        a = vault_service.create_note(work, "A", "[[Hub]]")
        b = vault_service.create_note(work, "B", "[[Hub]] [[A]]")
        vault_service.create_note(work, "C", "[[Hub]]")
        lonely = vault_service.create_note(work, "Lonely", "[[Missing]]")

        assert [n.id for n in vault_service.find_orphaned_notes()] == [lonely]
        central = vault_service.find_central_notes(limit=2)
        assert [(n.id, count) for n, count in central] == [(hub, 3), (a, 2)]

    def test_link_to(self, vault_service):
        assert vault_service.link_to("Budget") == "[[Budget]]"


class TestVersions:
    def test_restore_and_diff(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan", "line one\nline two\n")
        vault_service.save_note(plan, "line one\nline 2\n")

        diff = vault_service.diff_versions(plan, 1, 2)
        assert "-line two" in diff
        assert "+line 2" in diff

        restored = vault_service.restore_version(plan, 1)
        assert restored.seq == 3
        assert vault_service.get_note(plan).body == "line one\nline two\n"
        assert vault_service.diff_versions(plan, 1, 3) == ""

    def test_diff_of_encrypted_version_needs_password(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan", "plain")
        vault_service.encrypt_note(plan, "pw")
        vault_service.save_note(plan, "hidden", password="pw")

        with pytest.raises(EncryptionRequiredError):
            vault_service.diff_versions(plan, 1, 2)
        assert "+hidden" in vault_service.diff_versions(plan, 1, 2, password="pw")


class TestRepository:
    def test_search(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan")
        assert [hit.note_id for hit in vault_service.search("pln")] == [plan]

    def test_delete_folder_removes_from_search(self, vault_service):
        work = vault_service.create_folder("Work")
        vault_service.create_note(work, "Plan", "x")
        vault_service.create_note(work, "Planet", "y")
        assert vault_service.delete_folder(work) == 2
        assert vault_service.search("plan") == []

    def test_statistics(self, vault_service):
        work = vault_service.create_folder("Work")
        vault_service.create_folder("Empty")
        plan = vault_service.create_note(work, "Plan", "three little words")
        secret = vault_service.create_note(work, "Secret", "hidden words")
        vault_service.encrypt_note(secret, "pw")
        vault_service.toggle_favorite(plan)
        vault_service.create_tag("q3")

        stats = vault_service.statistics()
        assert stats.to_dict() == {
            "total_folders": 2,
            "total_notes": 2,
            "total_words": 3,
            "total_chars": len("three little words"),
            "encrypted_count": 1,
            "total_tags": 1,
            "favorite_count": 1,
            "damaged_count": 0,
        }

    def test_export_snapshot(self, vault_service, temp_dir):
        work = vault_service.create_folder("Work")
        vault_service.create_note(work, "Plan", "body")
        target = vault_service.export_snapshot(temp_dir / "backup")
        assert (target / "Work" / "Plan.md").read_text(encoding="utf-8") == "body"

    def test_reload(self, vault_service):
        work = vault_service.create_folder("Work")
        plan = vault_service.create_note(work, "Plan", "kept")
        vault_service.reload()
        assert vault_service.get_note(plan).body == "kept"

    def test_operations_are_traced(self, vault_service):
        work = vault_service.create_folder("Work")
        vault_service.create_note(work, "Plan")
        with pytest.raises(NotFoundError):
            vault_service.delete_note(NoteId(work, 99))

        recorded = metrics.get_metrics()
        assert recorded["create_folder"]["success_count"] == 1
        assert recorded["create_note"]["count"] == 1
        assert recorded["delete_note"]["error_count"] == 1
        assert "not found" in recorded["delete_note"]["last_error"]
