import io
import zipfile

import pytest

from panel_errors import ArchiveError
from zip_extract import extract_archive, is_metadata_entry, list_files, safe_relative_path
from tests.helpers import messages


def make_zip(entries) -> bytes:
    """``entries`` maps member names to bytes; names ending in "/" become directory entries."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, b"" if name.endswith("/") else data)
    return buf.getvalue()


class TestSafeRelativePath:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("index.js", "index.js"),
            ("src/util/helper.js", "src/util/helper.js"),
            ("./src//a.js", "src/a.js"),
            ("src\\win\\a.js", "src/win/a.js"),
            ("lib/", "lib"),
        ],
    )
    def test_normalizes(self, name, expected) -> None:
        assert safe_relative_path(name) == expected

    @pytest.mark.parametrize("name", ["../evil.js", "a/../../evil.js", "/etc/passwd", "C:/evil.js", "C:evil.js", "./", ""])
    def test_rejects_escaping_names(self, name) -> None:
        assert safe_relative_path(name) is None

    def test_metadata_detection(self) -> None:
        assert is_metadata_entry("__MACOSX/._index.js")
        assert is_metadata_entry(".DS_Store")
        assert not is_metadata_entry("src/index.js")


class TestExtractArchive:
    def test_nested_files_without_directory_entries(self, tmp_path, sink) -> None:
        """Parents are created for files even when the archive lists no directories."""
        data = make_zip({
            "index.js": b"console.log(1)",
            "src/util/helper.js": b"module.exports = {}",
        })
        result = extract_archive(data, tmp_path, sink, "alice")

        assert (tmp_path / "src" / "util" / "helper.js").read_bytes() == b"module.exports = {}"
        assert result.extracted_count == 2
        assert result.total_entries == 2
        assert sorted(result.extracted_paths) == ["index.js", "src/util/helper.js"]
        assert result.verified_paths == ["index.js", "src/util/helper.js"]
        assert any(m.startswith("Verified: src/util/helper.js") for m in messages(sink))

    def test_directory_entries_are_created_first(self, tmp_path, sink) -> None:
        data = make_zip({"lib/": b"", "lib/empty/": b"", "lib/a.js": b"a"})
        result = extract_archive(data, tmp_path, sink)

        assert (tmp_path / "lib" / "empty").is_dir()
        assert result.extracted_count == 1
        assert "Created directory: lib/empty" in messages(sink)

    def test_metadata_entries_skipped(self, tmp_path, sink) -> None:
        data = make_zip({
            "__MACOSX/._index.js": b"junk",
            ".hidden": b"junk",
            "index.js": b"ok",
        })
        result = extract_archive(data, tmp_path, sink)

        assert result.extracted_paths == ["index.js"]
        assert result.total_entries == 3
        assert not (tmp_path / "__MACOSX").exists()
        assert "Skipping: __MACOSX/._index.js" in messages(sink)

    def test_traversal_entries_never_leave_destination(self, tmp_path, sink) -> None:
        dest = tmp_path / "home"
        data = make_zip({
            "../evil.js": b"pwned",
            "a/../../also-evil.js": b"pwned",
            "good.js": b"fine",
        })
        result = extract_archive(data, dest, sink)

        assert result.extracted_paths == ["good.js"]
        assert not (tmp_path / "evil.js").exists()
        assert not (tmp_path / "also-evil.js").exists()
        warnings = [e.message for e in sink.recent(100) if e.severity == "warning"]
        assert "Skipping unsafe path in archive: a/../../also-evil.js" in warnings
        # leading-dot names are dropped as metadata before the traversal check
        assert "Skipping: ../evil.js" in messages(sink)

    def test_unreadable_archive_raises(self, tmp_path, sink) -> None:
        with pytest.raises(ArchiveError) as exc:
            extract_archive(b"definitely not a zip", tmp_path, sink)
        assert exc.value.message.startswith("Failed to extract ZIP")
        assert exc.value.status_code == 400

    def test_overwrites_existing_files(self, tmp_path, sink) -> None:
        (tmp_path / "index.js").write_text("old")
        extract_archive(make_zip({"index.js": b"new"}), tmp_path, sink)
        assert (tmp_path / "index.js").read_text() == "new"

    def test_list_files_is_recursive_and_sorted(self, tmp_path) -> None:
        (tmp_path / "b").mkdir()
        (tmp_path / "b" / "z.js").write_text("")
        (tmp_path / "a.js").write_text("")
        assert list_files(tmp_path) == ["a.js", "b/z.js"]

    def test_bad_entry_does_not_stop_the_rest(self, tmp_path, sink) -> None:
        """A corrupt payload and an unwritable target are logged; their siblings still land."""
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as zf:
            zf.writestr("a.txt", b"first")
            zf.writestr("bad.txt", b"CORRUPT-ME-PAYLOAD")
            zf.writestr("taken.js", b"x")
            zf.writestr("z.txt", b"last")
        data = bytearray(buf.getvalue())
        at = data.index(b"CORRUPT-ME-PAYLOAD")
        data[at] ^= 0xFF
        (tmp_path / "taken.js").mkdir()

        result = extract_archive(bytes(data), tmp_path, sink)

        assert result.extracted_paths == ["a.txt", "z.txt"]
        assert result.extracted_count == 2
        assert result.total_entries == 4
        assert (tmp_path / "z.txt").read_bytes() == b"last"
        assert not (tmp_path / "bad.txt").exists()
        errors = [e.message for e in sink.recent(100) if e.severity == "error"]
        assert any(m.startswith("Error extracting bad.txt") for m in errors)
        assert any(m.startswith("Error extracting taken.js") for m in errors)
