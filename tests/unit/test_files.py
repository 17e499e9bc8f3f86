from pathlib import Path

import pytest

from hangmigrate.core.files import AtomicFileWriter, write_text_atomic


def _temp_files(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.endswith(".tmp")]


def test_close_publishes_complete_file(tmp_path: Path) -> None:
    dest = tmp_path / "out.bin"
    writer = AtomicFileWriter(dest)
    writer.write(b"hello ")
    writer.write(b"world")
    assert not dest.exists()

    writer.close()

    assert dest.read_bytes() == b"hello world"
    assert _temp_files(tmp_path) == []


def test_temp_file_lives_beside_destination(tmp_path: Path) -> None:
    dest = tmp_path / "out.bin"
    writer = AtomicFileWriter(dest)
    try:
        assert writer.temp_path.parent == tmp_path
        assert writer.temp_path.name.startswith(".out.bin.")
    finally:
        writer.abandon()


def test_unclosed_writer_leaves_destination_absent(tmp_path: Path) -> None:
    dest = tmp_path / "crash.bin"
    writer = AtomicFileWriter(dest)
    writer.write(b"partial")

    # Simulated crash: close() never runs.
    assert not dest.exists()
    assert writer.temp_path.exists()

    writer.abandon()
    assert not writer.temp_path.exists()
    assert not dest.exists()


def test_exception_inside_with_block_abandons(tmp_path: Path) -> None:
    dest = tmp_path / "boom.bin"
    with pytest.raises(RuntimeError):
        with AtomicFileWriter(dest) as writer:
            writer.write(b"partial")
            raise RuntimeError("network dropped")

    assert not dest.exists()
    assert _temp_files(tmp_path) == []


def test_abandon_keeps_previous_destination_contents(tmp_path: Path) -> None:
    dest = tmp_path / "keep.txt"
    dest.write_text("original", encoding="utf-8")

    writer = AtomicFileWriter(dest)
    writer.write(b"replacement")
    writer.abandon()

    assert dest.read_text(encoding="utf-8") == "original"


def test_write_after_close_is_rejected(tmp_path: Path) -> None:
    writer = AtomicFileWriter(tmp_path / "done.bin")
    writer.close()
    with pytest.raises(ValueError):
        writer.write(b"late")


def test_text_mode_and_helper(tmp_path: Path) -> None:
    dest = tmp_path / "nested" / "doc.json"
    write_text_atomic(dest, '{"a": 1}\n')
    assert dest.read_text(encoding="utf-8") == '{"a": 1}\n'

    with AtomicFileWriter(tmp_path / "lines.jsonl", encoding="utf-8") as writer:
        writer.write("é\n")
    assert (tmp_path / "lines.jsonl").read_text(encoding="utf-8") == "é\n"
