"""Tests for the attachment manager."""

import datetime

import pytest

from kol_noter_store.services.attachment_manager import (
    AttachmentManager,
    generate_filename,
    parse_markdown_images,
    parse_wiki_images,
)
from tests.fakes import build_note

PNG_DATA_URL = "data:image/png;base64,iVBORw=="
NOW = datetime.datetime(2024, 3, 5, 14, 7, 9)


class TestFilenames:
    def test_user_supplied_name_is_sanitized(self):
        assert generate_filename("My Photo (1).PNG", now=NOW) == "20240305140709-my-photo-1-.png"

    def test_pasted_image_name(self):
        assert generate_filename(extension="jpg", now=NOW) == "Pasted-image-20240305140709.jpg"


class TestParsing:
    def test_wiki_images(self):
        content = "Intro ![[diagram.png]] and ![[shots/one.jpg]]"
        assert parse_wiki_images(content) == ["diagram.png", "shots/one.jpg"]

    def test_markdown_images(self):
        content = "![alt text](assets/a.png) ![](b.png)"
        assert parse_markdown_images(content) == [("alt text", "assets/a.png"), ("", "b.png")]


@pytest.fixture
def embedded_manager(embedded_adapter):
    embedded_adapter.save_note(build_note())
    return AttachmentManager(embedded_adapter)


@pytest.fixture
def vault_manager(vault_with_project):
    vault_with_project.save_note(build_note())
    return AttachmentManager(vault_with_project)


class TestSaveAttachment:
    def test_embedded_keeps_data_url(self, embedded_manager, embedded_adapter):
        result = embedded_manager.save_attachment("note-1", PNG_DATA_URL, "pic.png")
        assert result.success
        assert result.path == "pic.png"
        assert embedded_adapter.get_attachment("note-1", "pic.png") == PNG_DATA_URL

    def test_vault_writes_file(self, vault_manager, vault_with_project):
        result = vault_manager.save_attachment("note-1", b"\x89PNG", "pic.png")
        assert result.success
        assert result.path == "assets/meeting-notes/pic.png"
        assert vault_with_project.get_attachment("note-1", "pic.png") == PNG_DATA_URL

    def test_generated_name_uses_mime_extension(self, vault_manager):
        result = vault_manager.save_attachment("note-1", PNG_DATA_URL)
        assert result.success
        assert result.filename.startswith("Pasted-image-")
        assert result.filename.endswith(".png")

    def test_failure_is_reported_not_raised(self, vault_manager):
        result = vault_manager.save_attachment("ghost", b"x", "a.png")
        assert not result.success
        assert result.error
        assert result.path == ""

    def test_plain_string_rejected(self, vault_manager):
        result = vault_manager.save_attachment("note-1", "not a data url", "a.txt")
        assert not result.success
        assert "data URL" in result.error

    def test_malformed_data_url(self, vault_manager):
        result = vault_manager.save_attachment("note-1", "data:image/png;base64,!!!", "a.png")
        assert not result.success

    def test_follows_active_adapter(self, embedded_adapter, vault_with_project):
        embedded_adapter.save_note(build_note())
        vault_with_project.save_note(build_note())
        active = [embedded_adapter]
        manager = AttachmentManager(lambda: active[0])
        assert manager.save_attachment("note-1", b"x", "a.png").path == "a.png"
        active[0] = vault_with_project
        assert manager.save_attachment("note-1", b"x", "a.png").path == "assets/meeting-notes/a.png"


class TestResolve:
    def test_inline_map_wins(self, vault_manager):
        url = vault_manager.resolve_attachment_url("note-1", "assets/x/pic.png", {"pic.png": PNG_DATA_URL})
        assert url == PNG_DATA_URL

    def test_adapter_lookup(self, vault_manager):
        vault_manager.save_attachment("note-1", b"\x89PNG", "pic.png")
        assert vault_manager.resolve_attachment_url("note-1", "pic.png") == PNG_DATA_URL

    def test_unresolved_returns_path(self, vault_manager):
        assert vault_manager.resolve_attachment_url("note-1", "missing.png") == "missing.png"

    def test_resolve_images_in_content(self, vault_manager):
        vault_manager.save_attachment("note-1", b"\x89PNG", "pic.png")
        content = "See ![[pic.png]] and ![[gone.png]]"
        assert vault_manager.resolve_images_in_content(content, "note-1") == (
            f"See ![]({PNG_DATA_URL}) and ![](gone.png)"
        )


class TestMigrate:
    def test_pass_through_on_embedded(self, embedded_manager):
        inline = {"a.png": PNG_DATA_URL}
        assert embedded_manager.migrate_attachments("note-1", inline) == inline

    def test_vault_writes_and_skips_failures(self, vault_manager, vault_with_project):
        inline = {
            "a.png": PNG_DATA_URL,
            "already.png": "assets/meeting-notes/already.png",
            "bad.png": "data:image/png;base64,!!!",
        }
        migrated = vault_manager.migrate_attachments("note-1", inline)
        assert migrated == {
            "a.png": "assets/meeting-notes/a.png",
            "already.png": "assets/meeting-notes/already.png",
        }
        assert vault_with_project.get_attachment("note-1", "a.png") == PNG_DATA_URL
