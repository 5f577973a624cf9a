from __future__ import annotations

import pytest

from agentic_runtime.errors import PatchError, PathEscapeError
from agentic_runtime.patching import (
    apply_hunks,
    apply_patch,
    parse_hunk_header,
    parse_hunks,
    parse_sections,
    split_lines,
)
from agentic_runtime.path_guard import PathGuard


def _guard(tmp_path) -> PathGuard:
    return PathGuard(str(tmp_path))


def test_update_with_repeated_end_marker(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("hello\nworld\n", encoding="utf-8")
    patch = "*** Begin Patch\n*** Update File: a.txt\n@@ -1 +1 @@\n-hello\n+hi\n*** End Patch\n*** End Patch"

    result = apply_patch(_guard(tmp_path), patch)

    assert result == "Applied 1 patch block(s)."
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "hi\nworld\n"


def test_multi_hunk_update_preserves_untouched_lines(tmp_path) -> None:
    target = tmp_path / "lines.txt"
    target.write_text("".join(f"line{i}\n" for i in range(1, 11)), encoding="utf-8")
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Update File: lines.txt",
            "@@ -2,2 +2,2 @@",
            " line2",
            "-line3",
            "+LINE3",
            "@@ -8,2 +8,3 @@",
            " line8",
            "+inserted",
            " line9",
            "*** End Patch",
        ]
    )

    apply_patch(_guard(tmp_path), patch)

    lines = target.read_text(encoding="utf-8").splitlines()
    assert lines[2] == "LINE3"
    assert lines[8] == "inserted"
    assert lines[-1] == "line10"
    assert len(lines) == 11


def test_missing_trailing_newline_is_preserved(tmp_path) -> None:
    (tmp_path / "n.txt").write_text("one\ntwo", encoding="utf-8")
    patch = "*** Begin Patch\n*** Update File: n.txt\n@@ -1 +1 @@\n-one\n+uno\n*** End Patch"

    apply_patch(_guard(tmp_path), patch)

    assert (tmp_path / "n.txt").read_text(encoding="utf-8") == "uno\ntwo"


def test_no_newline_marker_drops_trailing_newline(tmp_path) -> None:
    (tmp_path / "m.txt").write_text("a\nb\n", encoding="utf-8")
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Update File: m.txt",
            "@@ -2 +2 @@",
            "-b",
            "+c",
            "\\ No newline at end of file",
            "*** End Patch",
        ]
    )

    apply_patch(_guard(tmp_path), patch)

    assert (tmp_path / "m.txt").read_text(encoding="utf-8") == "a\nc"


def test_context_mismatch_is_deterministic(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("alpha\nbeta\n", encoding="utf-8")
    patch = "*** Begin Patch\n*** Update File: a.txt\n@@ -1,2 +1,2 @@\n alpha\n-gamma\n+delta\n*** End Patch"

    for _ in range(2):
        with pytest.raises(PatchError, match="delete mismatch: expected 'gamma', got 'beta'"):
            apply_patch(_guard(tmp_path), patch)
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "alpha\nbeta\n"


def test_add_then_delete_leaves_no_file(tmp_path) -> None:
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Add File: tmp/new.txt",
            "+content",
            "*** End Patch",
            "*** Begin Patch",
            "*** Delete File: tmp/new.txt",
            "*** End Patch",
        ]
    )

    assert apply_patch(_guard(tmp_path), patch) == "Applied 2 patch block(s)."
    assert not (tmp_path / "tmp" / "new.txt").exists()


def test_add_file_literal_body(tmp_path) -> None:
    patch = "*** Begin Patch\n*** Add File: docs/readme.md\n+# Title\n+\n+body\n*** End Patch"

    apply_patch(_guard(tmp_path), patch)

    assert (tmp_path / "docs" / "readme.md").read_text(encoding="utf-8") == "# Title\n\nbody\n"


def test_add_existing_file_fails(tmp_path) -> None:
    (tmp_path / "exists.txt").write_text("x\n", encoding="utf-8")
    patch = "*** Begin Patch\n*** Add File: exists.txt\n+y\n*** End Patch"
    with pytest.raises(PatchError, match="already exists"):
        apply_patch(_guard(tmp_path), patch)


def test_delete_missing_file_fails(tmp_path) -> None:
    patch = "*** Begin Patch\n*** Delete File: ghost.txt\n*** End Patch"
    with pytest.raises(PatchError, match="does not exist"):
        apply_patch(_guard(tmp_path), patch)


def test_failed_section_leaves_earlier_sections_unapplied(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("a\n", encoding="utf-8")
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Update File: a.txt",
            "@@ -1 +1 @@",
            "-a",
            "+A",
            "*** End Patch",
            "*** Begin Patch",
            "*** Delete File: missing.txt",
            "*** End Patch",
        ]
    )

    with pytest.raises(PatchError):
        apply_patch(_guard(tmp_path), patch)
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "a\n"


@pytest.mark.parametrize(
    "path, error",
    [
        ("../escape.txt", PatchError),
        ("/abs/path.txt", PatchError),
        ("", PatchError),
    ],
)
def test_invalid_paths_rejected(tmp_path, path, error) -> None:
    patch = f"*** Begin Patch\n*** Add File: {path}\n+x\n*** End Patch"
    with pytest.raises(error):
        apply_patch(_guard(tmp_path), patch)


def test_guard_rejects_symbolic_escape(tmp_path) -> None:
    guard = PathGuard(str(tmp_path / "root"))
    with pytest.raises(PathEscapeError):
        guard.resolve("a/../../b")


@pytest.mark.parametrize(
    "text, message",
    [
        ("*** Begin Patch\n*** Begin Patch\n", "nested patch block at line 2"),
        ("*** End Patch\n", "unexpected \\*\\*\\* End Patch at line 1"),
        ("*** Begin Patch\n*** End Patch\n", "missing header before line 2"),
        ("*** Update File: a.txt\n", "header outside patch at line 1"),
        ("garbage\n", "unexpected line outside patch at line 1"),
        ("*** Begin Patch\n*** Add File: a.txt\n+x\n", "unterminated patch block"),
        ("\n\n", "no patch blocks found"),
    ],
)
def test_parse_errors(text, message) -> None:
    with pytest.raises(PatchError, match=message):
        parse_sections(text)


def test_hunk_header_counts_default_to_one() -> None:
    assert parse_hunk_header("@@ -3 +4 @@") == (3, 1, 4, 1)
    assert parse_hunk_header("@@ -1,0 +1,2 @@ trailing text") == (1, 0, 1, 2)


def test_update_without_hunks_fails(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("a\n", encoding="utf-8")
    patch = "*** Begin Patch\n*** Update File: a.txt\n*** End Patch"
    with pytest.raises(PatchError, match="no hunks found"):
        apply_patch(_guard(tmp_path), patch)


def test_overlapping_hunks_rejected() -> None:
    hunks = parse_hunks(["@@ -2 +2 @@", "-b", "+B", "@@ -1 +1 @@", "-a", "+A"])
    with pytest.raises(PatchError, match="overlapping hunk"):
        apply_hunks(["a", "b", "c"], hunks)


def test_hunk_beyond_eof_rejected() -> None:
    hunks = parse_hunks(["@@ -9 +9 @@", "-x", "+y"])
    with pytest.raises(PatchError, match="beyond EOF"):
        apply_hunks(["a"], hunks)


def test_split_lines_tracks_trailing_newline() -> None:
    assert split_lines("a\nb\n") == (["a", "b"], True)
    assert split_lines("a\nb") == (["a", "b"], False)
    assert split_lines("") == ([], False)


def test_form_feed_inside_line_is_not_a_line_break(tmp_path) -> None:
    target = tmp_path / "a.txt"
    target.write_bytes(b"one\x0ctwo\nthree\n")
    patch = "*** Begin Patch\n*** Update File: a.txt\n@@ -1,2 +1,2 @@\n one\x0ctwo\n-three\n+3\n*** End Patch\n"

    apply_patch(_guard(tmp_path), patch)

    assert target.read_bytes() == b"one\x0ctwo\n3\n"


def test_crlf_patch_text_is_accepted(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("x\n", encoding="utf-8")
    patch = "*** Begin Patch\r\n*** Update File: a.txt\r\n@@ -1 +1 @@\r\n-x\r\n+y\r\n*** End Patch\r\n"

    apply_patch(_guard(tmp_path), patch)

    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "y\n"


def test_second_header_in_block_rejected(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("x\n", encoding="utf-8")
    (tmp_path / "b.txt").write_text("keep\n", encoding="utf-8")
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Update File: a.txt",
            "@@ -1 +1 @@",
            "-x",
            "+y",
            "*** Delete File: b.txt",
            "*** End Patch",
        ]
    )

    with pytest.raises(PatchError, match="multiple headers in patch block at line 6"):
        apply_patch(_guard(tmp_path), patch)

    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "x\n"
    assert (tmp_path / "b.txt").read_text(encoding="utf-8") == "keep\n"


def test_add_onto_directory_fails_before_any_write(tmp_path) -> None:
    (tmp_path / "pkg").mkdir()
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Add File: first.txt",
            "+hello",
            "*** End Patch",
            "*** Begin Patch",
            "*** Add File: pkg",
            "+oops",
            "*** End Patch",
        ]
    )

    with pytest.raises(PatchError, match="path pkg is a directory"):
        apply_patch(_guard(tmp_path), patch)

    assert not (tmp_path / "first.txt").exists()


def test_add_below_existing_file_fails_before_any_write(tmp_path) -> None:
    (tmp_path / "notes.txt").write_text("n\n", encoding="utf-8")
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Add File: first.txt",
            "+hello",
            "*** End Patch",
            "*** Begin Patch",
            "*** Add File: notes.txt/child.txt",
            "+oops",
            "*** End Patch",
        ]
    )

    with pytest.raises(PatchError, match="parent of notes.txt/child.txt is a file"):
        apply_patch(_guard(tmp_path), patch)

    assert not (tmp_path / "first.txt").exists()
