from pathlib import Path

import pytest

from modelfetch.archive.extractor import SecureExtractor
from modelfetch.exceptions import (
    ExtractCancelledError,
    ExtractError,
    MemberMismatchError,
    PathTraversalError,
    UnsupportedEntryTypeError,
)
from modelfetch.models.manifest import ArchiveMember

from conftest import build_tar, dir_info, file_info, link_info, payload, sha256

MEMBERS = {
    "encoder-model.int8.onnx": payload(5000, seed=1),
    "decoder_joint-model.int8.onnx": payload(3000, seed=2),
    "config/vocab.txt": b"a\nb\nc\n",
}


def members_of(files):
    return [ArchiveMember(path, len(data), sha256(data)) for path, data in files.items()]


def list_tree(root: Path):
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


@pytest.fixture
def extractor(layout):
    return SecureExtractor(layout)


@pytest.fixture
def write_archive(tmp_path):
    def write(data: bytes, name: str = "parakeet.tar.gz") -> Path:
        path = tmp_path / name
        path.write_bytes(data)
        return path

    return write


def assert_nothing_installed(layout):
    assert list(layout.models_dir.iterdir()) == []
    assert list(layout.extracting_dir.iterdir()) == []


def test_extract_flat_archive(extractor, layout, write_archive):
    archive = write_archive(build_tar(MEMBERS))
    destination = layout.models_dir / "parakeet"

    result = extractor.extract(archive, members_of(MEMBERS), destination)

    assert result == destination
    assert list_tree(destination) == sorted(MEMBERS)
    for path, data in MEMBERS.items():
        assert (destination / path).read_bytes() == data
    assert list(layout.extracting_dir.iterdir()) == []


@pytest.mark.parametrize("mode", ["w", "w:gz", "w:bz2", "w:xz"])
def test_single_top_level_directory_is_flattened(extractor, layout, write_archive, mode):
    files = {f"parakeet-tdt-0.6b-v3-int8/{p}": d for p, d in MEMBERS.items()}
    archive = write_archive(
        build_tar(files, entries=[dir_info("parakeet-tdt-0.6b-v3-int8")], mode=mode)
    )
    destination = layout.models_dir / "parakeet-tdt-0.6b-v3-int8"

    extractor.extract(archive, members_of(MEMBERS), destination)

    assert list_tree(destination) == sorted(MEMBERS)


def test_existing_destination_is_replaced(extractor, layout, write_archive):
    destination = layout.models_dir / "parakeet"
    destination.mkdir()
    (destination / "stale.bin").write_bytes(b"old")

    extractor.extract(write_archive(build_tar(MEMBERS)), members_of(MEMBERS), destination)

    assert list_tree(destination) == sorted(MEMBERS)


@pytest.mark.parametrize(
    "evil_name",
    ["../../etc/passwd", "/etc/passwd", "config/../../escape.txt", "..\\..\\evil.txt"],
    ids=["parent", "absolute", "nested-parent", "backslash"],
)
def test_path_traversal_rejected(extractor, layout, write_archive, evil_name):
    archive = write_archive(build_tar(MEMBERS, entries=[file_info(evil_name, b"root:x:0:0")]))
    destination = layout.models_dir / "parakeet"

    with pytest.raises(PathTraversalError) as exc_info:
        extractor.extract(archive, members_of(MEMBERS), destination)

    assert exc_info.value.kind == "path_traversal"
    assert not (layout.root / "etc").exists()
    assert not (layout.root / "escape.txt").exists()
    assert not (layout.root / "evil.txt").exists()
    assert not destination.exists()
    assert_nothing_installed(layout)


@pytest.mark.parametrize("hard", [False, True], ids=["symlink", "hardlink"])
def test_link_entries_rejected(extractor, layout, write_archive, hard):
    archive = write_archive(
        build_tar(
            entries=[link_info("encoder-model.int8.onnx", "/etc/passwd", hard=hard)]
            + [file_info(p, d) for p, d in MEMBERS.items()]
        )
    )
    destination = layout.models_dir / "parakeet"

    with pytest.raises(UnsupportedEntryTypeError) as exc_info:
        extractor.extract(archive, members_of(MEMBERS), destination)

    assert exc_info.value.kind == "unsupported_entry_type"
    assert not destination.exists()
    assert_nothing_installed(layout)


def test_link_rejected_even_when_pointing_inside(extractor, layout, write_archive):
    archive = write_archive(
        build_tar(MEMBERS, entries=[link_info("alias.onnx", "encoder-model.int8.onnx")])
    )

    with pytest.raises(UnsupportedEntryTypeError):
        extractor.extract(archive, members_of(MEMBERS), layout.models_dir / "parakeet")


def test_unlisted_file_rejected(extractor, layout, write_archive):
    archive = write_archive(build_tar({**MEMBERS, "payload.sh": b"#!/bin/sh"}))

    with pytest.raises(MemberMismatchError) as exc_info:
        extractor.extract(archive, members_of(MEMBERS), layout.models_dir / "parakeet")

    assert exc_info.value.kind == "member_mismatch"
    assert_nothing_installed(layout)


def test_missing_member_rejected(extractor, layout, write_archive):
    partial = dict(MEMBERS)
    partial.pop("config/vocab.txt")
    archive = write_archive(build_tar(partial))

    with pytest.raises(MemberMismatchError) as exc_info:
        extractor.extract(archive, members_of(MEMBERS), layout.models_dir / "parakeet")

    assert exc_info.value.context["missing"] == ["config/vocab.txt"]
    assert_nothing_installed(layout)


def test_member_digest_mismatch_rejected(extractor, layout, write_archive):
    tampered = dict(MEMBERS)
    data = bytearray(tampered["encoder-model.int8.onnx"])
    data[0] ^= 0x01
    tampered["encoder-model.int8.onnx"] = bytes(data)
    archive = write_archive(build_tar(tampered))

    with pytest.raises(MemberMismatchError) as exc_info:
        extractor.extract(archive, members_of(MEMBERS), layout.models_dir / "parakeet")

    assert exc_info.value.context["reason"] == "digest_mismatch"
    assert_nothing_installed(layout)


def test_oversized_member_rejected_while_streaming(extractor, layout, write_archive):
    oversized = {**MEMBERS, "config/vocab.txt": b"x" * 1000}
    archive = write_archive(build_tar(oversized))

    with pytest.raises(MemberMismatchError) as exc_info:
        extractor.extract(archive, members_of(MEMBERS), layout.models_dir / "parakeet")

    assert exc_info.value.context["actual_size"] == 1000


def test_duplicate_entry_rejected(extractor, layout, write_archive):
    archive = write_archive(
        build_tar(MEMBERS, entries=[file_info("config/vocab.txt", MEMBERS["config/vocab.txt"])])
    )

    with pytest.raises(MemberMismatchError):
        extractor.extract(archive, members_of(MEMBERS), layout.models_dir / "parakeet")


def test_corrupt_archive(extractor, layout, write_archive):
    archive = write_archive(payload(4096, seed=9))

    with pytest.raises(ExtractError) as exc_info:
        extractor.extract(archive, members_of(MEMBERS), layout.models_dir / "parakeet")

    assert exc_info.value.kind == "archive_corrupt"
    assert_nothing_installed(layout)


def test_cancel_between_entries(extractor, layout, write_archive):
    archive = write_archive(build_tar(MEMBERS))
    calls = []

    def should_cancel():
        calls.append(1)
        return len(calls) > 1

    with pytest.raises(ExtractCancelledError) as exc_info:
        extractor.extract(
            archive, members_of(MEMBERS), layout.models_dir / "parakeet", should_cancel
        )

    assert exc_info.value.kind == "cancelled"
    assert_nothing_installed(layout)
