"""Tests for the firmware file writer used by the CLI."""

from ota import TransportError
from server import FirmwareWriter


def test_writer_saves_the_image_on_end(tmp_path) -> None:
    target = tmp_path / "out" / "firmware.bin"
    writer = FirmwareWriter(str(target))
    writer.start(6)
    writer.write(3, 3, 6, b"abc")
    writer.write(3, 6, 6, b"def")
    writer.finish()
    assert target.read_bytes() == b"abcdef"
    assert not (tmp_path / "out" / "firmware.bin.part").exists()
    assert writer.completed == 1


def test_writer_discards_partial_image_on_error(tmp_path) -> None:
    target = tmp_path / "firmware.bin"
    writer = FirmwareWriter(str(target))
    writer.start(6)
    writer.write(3, 3, 6, b"abc")
    writer.fail(TransportError("connection reset"))
    assert not target.exists()
    assert not (tmp_path / "firmware.bin.part").exists()


def test_writer_keeps_previous_image_until_next_upload_completes(tmp_path) -> None:
    target = tmp_path / "firmware.bin"
    target.write_bytes(b"old")
    writer = FirmwareWriter(str(target))
    writer.start(3)
    writer.write(3, 3, 3, b"new")
    assert target.read_bytes() == b"old"
    writer.finish()
    assert target.read_bytes() == b"new"


def test_progress_is_printed_in_ten_percent_steps(tmp_path, capsys) -> None:
    writer = FirmwareWriter(str(tmp_path / "firmware.bin"))
    writer.start(100)
    for done in range(1, 101):
        writer.write(1, done, 100, b"x")
    writer.finish()
    lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("[server] progress")]
    percents = [int(line.split()[2].rstrip("%")) for line in lines]
    assert percents == [0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100]


def test_progress_steps_with_uneven_chunks(tmp_path, capsys) -> None:
    """A small first chunk must not print an off-step line before 10%."""
    writer = FirmwareWriter(str(tmp_path / "firmware.bin"))
    writer.start(1000)
    writer.write(10, 10, 1000, b"x" * 10)
    writer.write(490, 500, 1000, b"x" * 490)
    writer.write(500, 1000, 1000, b"x" * 500)
    writer.finish()
    lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("[server] progress")]
    percents = [int(line.split()[2].rstrip("%")) for line in lines]
    assert percents == [0, 50, 100]
