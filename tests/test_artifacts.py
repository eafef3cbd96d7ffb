"""
Artifacts (artifacts/store.py, artifacts/reader.py, artifacts/envfile.py)

Tests the shared stores, JSON field extraction and environment files.
"""

import json
import os

import pytest

from convoy.artifacts import (
    ArtifactRef,
    ArtifactStore,
    EnvironmentFileWriter,
    EnvironmentRecord,
    FilesystemArtifactStore,
    MemoryArtifactStore,
    StructuredArtifactReader,
    navigate,
    parse_env_text,
    parse_field_path,
    read_env_file,
    render_value,
)
from convoy.faults import (
    ArtifactNotFoundFault,
    ArtifactParseFault,
    ArtifactReadFault,
    ArtifactWriteFault,
)


# ============================================================================
# ArtifactRef
# ============================================================================

class TestArtifactRef:

    def test_parse_with_selector(self):
        ref = ArtifactRef.parse("katana/deployments.json:kakarot.address")
        assert ref.path == "katana/deployments.json"
        assert ref.selector == "kakarot.address"
        assert str(ref) == "katana/deployments.json:kakarot.address"

    def test_parse_without_selector(self):
        ref = ArtifactRef.parse("katana/deployments.json")
        assert ref.selector is None
        assert str(ref) == "katana/deployments.json"


# ============================================================================
# MemoryArtifactStore
# ============================================================================

class TestMemoryArtifactStore:

    def test_write_read(self, memory_store):
        memory_store.write_text("a/b.json", "{}")
        assert memory_store.exists("a/b.json")
        assert memory_store.read_text("a/b.json") == "{}"

    def test_missing_is_none(self, memory_store):
        assert memory_store.read_text("nope.json") is None
        assert not memory_store.exists("nope.json")

    def test_paths_are_normalized(self, memory_store):
        memory_store.write_text("./katana//deployments.json", "{}")
        assert memory_store.list_paths() == ["katana/deployments.json"]

    @pytest.mark.parametrize("path", ["/etc/passwd", "../outside.json", "a/../../b"])
    def test_rejects_escaping_paths(self, memory_store, path):
        with pytest.raises(ValueError, match="relative to the store"):
            memory_store.write_text(path, "x")

    def test_replace_not_merge(self, memory_store):
        memory_store.write_text(".env", "A=1\n")
        memory_store.write_text(".env", "B=2\n")
        assert memory_store.read_text(".env") == "B=2\n"

    def test_delete(self, memory_store):
        memory_store.write_text("x", "1")
        assert memory_store.delete("x") is True
        assert memory_store.delete("x") is False
        assert len(memory_store) == 0

    def test_ref_read_write(self, memory_store):
        memory_store.write(ArtifactRef(".env", content="A=1\n"))
        assert memory_store.read(ArtifactRef(".env")) == "A=1\n"

    def test_ref_write_needs_content(self, memory_store):
        with pytest.raises(ValueError, match="no content"):
            memory_store.write(ArtifactRef(".env"))

    def test_initial_files(self):
        store = MemoryArtifactStore({"a.json": "1"})
        assert store.read_text("a.json") == "1"
        assert store.locate("a.json") == "memory://a.json"


# ============================================================================
# FilesystemArtifactStore
# ============================================================================

class TestFilesystemArtifactStore:

    def test_factory(self, tmp_path):
        store = ArtifactStore(str(tmp_path))
        assert isinstance(store, FilesystemArtifactStore)

    def test_write_creates_directories(self, fs_store, tmp_path):
        fs_store.write_text("katana/deployments.json", "{}")
        assert (tmp_path / "deployments" / "katana" / "deployments.json").read_text() == "{}"

    def test_read_missing(self, fs_store):
        assert fs_store.read_text("katana/deployments.json") is None

    def test_write_replaces_and_leaves_no_temp_files(self, fs_store, tmp_path):
        fs_store.write_text(".env", "OLD=1\n")
        fs_store.write_text(".env", "NEW=2\n")
        assert fs_store.read_text(".env") == "NEW=2\n"
        assert os.listdir(tmp_path / "deployments") == [".env"]

    def test_list_paths(self, fs_store):
        fs_store.write_text("katana/deployments.json", "{}")
        fs_store.write_text("katana/declarations.json", "{}")
        fs_store.write_text(".env", "")
        assert fs_store.list_paths("katana/") == [
            "katana/declarations.json",
            "katana/deployments.json",
        ]

    def test_list_paths_missing_root(self, tmp_path):
        assert FilesystemArtifactStore(str(tmp_path / "absent")).list_paths() == []

    def test_delete(self, fs_store):
        fs_store.write_text("x", "1")
        assert fs_store.delete("x")
        assert not fs_store.exists("x")

    def test_unwritable_root_raises_write_fault(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = FilesystemArtifactStore(str(blocker))
        with pytest.raises(ArtifactWriteFault) as exc_info:
            store.write_text(".env", "A=1\n")
        assert exc_info.value.code == "ARTIFACT_WRITE_ERROR"

    def test_unreadable_artifact_raises_read_fault(self, fs_store, tmp_path):
        (tmp_path / "deployments" / "katana" / "deployments.json").mkdir(parents=True)
        with pytest.raises(ArtifactReadFault) as exc_info:
            fs_store.read_text("katana/deployments.json")
        assert exc_info.value.code == "ARTIFACT_READ_ERROR"

    def test_locate(self, fs_store, tmp_path):
        assert fs_store.locate(".env") == str(tmp_path / "deployments" / ".env")


# ============================================================================
# Field paths
# ============================================================================

class TestFieldPaths:

    @pytest.mark.parametrize("text,steps", [
        ("kakarot.address", ("kakarot", "address")),
        (".kakarot.address", ("kakarot", "address")),
        ("items.0.name", ("items", 0, "name")),
        ("items[1]", ("items", 1)),
        ('["odd.key"].value', ("odd.key", "value")),
        ("", ()),
        (".", ()),
        (None, ()),
    ])
    def test_parse(self, text, steps):
        assert parse_field_path(text) == steps

    @pytest.mark.parametrize("text", ["a..b", "a[", "a[x]"])
    def test_malformed(self, text):
        with pytest.raises(ValueError, match="Malformed field path"):
            parse_field_path(text)

    def test_navigate(self):
        doc = {"kakarot": {"address": "0xabc"}, "items": [{"name": "x"}]}
        assert navigate(doc, ("kakarot", "address")) == "0xabc"
        assert navigate(doc, ("items", 0, "name")) == "x"
        assert navigate(doc, ()) is doc

    def test_navigate_missing_is_none(self):
        doc = {"kakarot": {"address": "0xabc"}, "items": []}
        assert navigate(doc, ("kakarot", "class_hash")) is None
        assert navigate(doc, ("items", 3)) is None
        assert navigate(doc, ("kakarot", "address", "deeper")) is None
        assert navigate(doc, ("missing", "deeper")) is None


# ============================================================================
# StructuredArtifactReader
# ============================================================================

class CountingStore(MemoryArtifactStore):
    __slots__ = ("reads",)

    def __init__(self, files=None):
        self.reads = 0
        super().__init__(files)

    def read_text(self, path):
        self.reads += 1
        return super().read_text(path)


class TestStructuredArtifactReader:

    def test_read_field(self, memory_store):
        memory_store.write_text("d.json", json.dumps({"kakarot": {"address": "0xabc"}}))
        result = StructuredArtifactReader(memory_store).read("d.json", "kakarot.address")
        assert result.ok
        assert result.value == "0xabc"

    def test_missing_field_is_null_without_fault(self, memory_store):
        memory_store.write_text("d.json", "{}")
        result = StructuredArtifactReader(memory_store).read("d.json", "kakarot.address")
        assert result.ok
        assert result.value is None

    def test_missing_document(self, memory_store):
        result = StructuredArtifactReader(memory_store).read("d.json", "x")
        assert result.not_found
        assert isinstance(result.fault, ArtifactNotFoundFault)
        assert result.value is None

    def test_malformed_document(self, memory_store):
        memory_store.write_text("d.json", "{not json")
        result = StructuredArtifactReader(memory_store).read("d.json", "x")
        assert result.parse_failed
        assert isinstance(result.fault, ArtifactParseFault)
        assert "line 1" in result.fault.message

    def test_read_many_parses_each_document_once(self):
        store = CountingStore({"d.json": json.dumps({"a": 1, "b": 2})})
        results = StructuredArtifactReader(store).read_many([
            ("d.json", "a"), ("d.json", "b"), ("missing.json", "c"), ("missing.json", "d"),
        ])
        assert [r.value for r in results] == [1, 2, None, None]
        assert [r.not_found for r in results] == [False, False, True, True]
        assert store.reads == 2

    def test_non_utf8_is_parse_failure(self, fs_store, tmp_path):
        target = tmp_path / "deployments" / "d.json"
        target.parent.mkdir(parents=True)
        target.write_bytes(b"\xff\xfe\x00")
        result = StructuredArtifactReader(fs_store).read("d.json", "x")
        assert result.parse_failed

    def test_directory_in_place_of_document(self, fs_store, tmp_path):
        (tmp_path / "deployments" / "katana" / "deployments.json").mkdir(parents=True)
        result = StructuredArtifactReader(fs_store).read("katana/deployments.json", "kakarot.address")
        assert isinstance(result.fault, ArtifactReadFault)
        assert result.unreadable
        assert not result.not_found
        assert result.value is None

    def test_store_os_error_becomes_read_fault(self):
        class BrokenStore(MemoryArtifactStore):
            def read_text(self, path):
                raise PermissionError(13, "Permission denied")

        result = StructuredArtifactReader(BrokenStore()).read("d.json", "x")
        assert isinstance(result.fault, ArtifactReadFault)
        assert "Permission denied" in result.fault.message


# ============================================================================
# Environment values and records
# ============================================================================

class TestRenderValue:

    @pytest.mark.parametrize("value,text", [
        ("0xabc", "0xabc"),
        (None, "null"),
        (True, "true"),
        (False, "false"),
        (42, "42"),
        (1.5, "1.5"),
        ({"a": [1, 2]}, '{"a":[1,2]}'),
        ([1, "x"], '[1,"x"]'),
        ("", ""),
    ])
    def test_render(self, value, text):
        assert render_value(value) == text


class TestEnvironmentRecord:

    def test_order_preserved(self):
        record = EnvironmentRecord([("B", "2"), ("A", "1")])
        assert record.keys() == ["B", "A"]
        assert record.render() == "B=2\nA=1\n"

    def test_values_rendered(self):
        record = EnvironmentRecord([("A", None), ("B", 7)])
        assert record.to_dict() == {"A": "null", "B": "7"}

    def test_duplicate_key(self):
        record = EnvironmentRecord([("A", "1")])
        with pytest.raises(ValueError, match="Duplicate"):
            record.add("A", "2")

    @pytest.mark.parametrize("key", ["", "1A", "A-B", "A B"])
    def test_invalid_key(self, key):
        with pytest.raises(ValueError, match="Invalid environment key"):
            EnvironmentRecord().add(key, "x")

    def test_container_protocol(self):
        record = EnvironmentRecord([("A", "1")])
        assert "A" in record
        assert len(record) == 1
        assert list(record) == [("A", "1")]
        assert record.get("A") == "1"
        assert record.get("B", "d") == "d"
        assert record == EnvironmentRecord([("A", "1")])

    def test_plain_values_unquoted(self):
        assert EnvironmentRecord([("A", "0xabc")]).render() == "A=0xabc\n"

    def test_special_values_quoted(self):
        text = EnvironmentRecord([("A", 'a "b" $c')]).render()
        assert text == 'A="a \\"b\\" $c"\n'


class TestEnvironmentFiles:

    def test_writer_replaces_whole_file(self, memory_store):
        memory_store.write_text(".env", "STALE=1\n")
        EnvironmentFileWriter(memory_store).write(".env", EnvironmentRecord([("A", "1")]))
        assert memory_store.read_text(".env") == "A=1\n"

    def test_parse_env_text(self):
        assert parse_env_text("A=1\nB=null\n") == {"A": "1", "B": "null"}

    def test_roundtrip_through_dotenv(self, memory_store):
        record = EnvironmentRecord([
            ("PLAIN", "0xabc"),
            ("SPACED", "a b"),
            ("QUOTED", 'say "hi"'),
            ("DOLLAR", "$HOME"),
            ("HASH", "a#b"),
        ])
        EnvironmentFileWriter(memory_store).write(".env", record)
        assert read_env_file(memory_store, ".env") == record.to_dict()

    def test_read_missing_env_file(self, memory_store):
        assert read_env_file(memory_store, ".env") is None
