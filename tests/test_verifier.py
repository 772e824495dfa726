import pytest

from modelfetch.download.verifier import FileVerifier
from modelfetch.exceptions import VerifyDigestMismatchError, VerifySizeMismatchError
from modelfetch.models.manifest import ArchiveMember

from conftest import payload, sha256

DATA = payload(10_000)


@pytest.fixture
def artifact(tmp_path):
    path = tmp_path / "model.bin"
    path.write_bytes(DATA)
    return path


def expected(data: bytes = DATA, digest: str = None) -> ArchiveMember:
    return ArchiveMember("model.bin", len(data), digest or sha256(data))


def test_check_passes(artifact):
    FileVerifier().check(artifact, expected())


def test_digest_compared_case_insensitively(artifact):
    FileVerifier().check(artifact, expected(digest=sha256(DATA).upper()))


def test_size_mismatch_skips_hashing(artifact, monkeypatch):
    verifier = FileVerifier()

    def fail(_path):
        raise AssertionError("hash should not be computed")

    monkeypatch.setattr(verifier, "calc_sha256", fail)

    with pytest.raises(VerifySizeMismatchError) as exc_info:
        verifier.check(artifact, expected(DATA + b"x"))

    assert exc_info.value.kind == "size_mismatch"
    assert exc_info.value.context["actual_size"] == len(DATA)


def test_missing_file_is_size_mismatch(tmp_path):
    with pytest.raises(VerifySizeMismatchError) as exc_info:
        FileVerifier().check(tmp_path / "missing.bin", expected())

    assert exc_info.value.context["actual_size"] is None


def test_flipped_byte_is_digest_mismatch(artifact):
    corrupted = bytearray(DATA)
    corrupted[1234] ^= 0xFF
    artifact.write_bytes(bytes(corrupted))

    with pytest.raises(VerifyDigestMismatchError) as exc_info:
        FileVerifier().check(artifact, expected())

    assert exc_info.value.kind == "digest_mismatch"
    assert exc_info.value.code == "E402"


@pytest.mark.asyncio
async def test_async_verify(artifact):
    verifier = FileVerifier(chunk_size=1024)

    await verifier.verify(artifact, expected())
    assert await verifier.is_valid(artifact, expected())
    digest = sha256(DATA)
    other = ("0" if digest[0] != "0" else "1") + digest[1:]
    assert not await verifier.is_valid(artifact, expected(digest=other))
