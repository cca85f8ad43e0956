"""Tests for archive format sniffing and extraction."""

import bz2
import gzip
import io
import tarfile
import zipfile

import py7zr
import pytest
import rarfile

from webfiles_backend import archive
from webfiles_backend.archive import ArchiveFormat, detect, extract, stream_output_name
from webfiles_backend.errors import ExtractionError, UnsupportedFormatError


def _make_zip(path, members):
    with zipfile.ZipFile(path, 'w') as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return path


def _make_tar(path, members):
    with tarfile.open(path, 'w') as tf:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return path


@pytest.mark.parametrize('header,expected', [
    (b'PK\x03\x04' + b'\x00' * 20, ArchiveFormat.ZIP),
    (b'PK\x05\x06' + b'\x00' * 18, ArchiveFormat.ZIP),
    (b'\x1f\x8b\x08\x00', ArchiveFormat.GZIP),
    (b'BZh91AY&SY', ArchiveFormat.BZIP2),
    (b'7z\xbc\xaf\x27\x1c\x00\x04', ArchiveFormat.SEVEN_ZIP),
    (b'Rar!\x1a\x07\x00', ArchiveFormat.RAR),
    (b'Rar!\x1a\x07\x01\x00', ArchiveFormat.RAR),
    (b'\x00' * 257 + b'ustar\x0000', ArchiveFormat.TAR),
    (b'plain text, nothing to see', ArchiveFormat.UNKNOWN),
])
def test_detect_by_header(tmp_path, header, expected):
    """Only the header decides the format; the rest of the file is irrelevant."""
    path = tmp_path / 'sample.bin'
    path.write_bytes(header + b'garbage that is not a valid archive body')
    assert detect(path) is expected


@pytest.mark.parametrize('data', [b'', b'P', b'PK', b'PK\x03', b'\x1f', b'Rar!\x1a', b'7z\xbc'])
def test_detect_truncated_is_unknown(tmp_path, data):
    path = tmp_path / 'short.bin'
    path.write_bytes(data)
    assert detect(path) is ArchiveFormat.UNKNOWN


def test_detect_missing_file_is_unknown(tmp_path):
    assert detect(tmp_path / 'missing.zip') is ArchiveFormat.UNKNOWN


def test_detect_real_archives(tmp_path):
    zip_path = _make_zip(tmp_path / 'a.zip', {'a.txt': b'a'})
    tar_path = _make_tar(tmp_path / 'a.tar', {'a.txt': b'a'})
    gz_path = tmp_path / 'a.txt.gz'
    gz_path.write_bytes(gzip.compress(b'hello'))
    seven_path = tmp_path / 'a.7z'
    with py7zr.SevenZipFile(seven_path, 'w') as szf:
        szf.writestr(b'hello', 'a.txt')

    assert detect(zip_path) is ArchiveFormat.ZIP
    assert detect(tar_path) is ArchiveFormat.TAR
    assert detect(gz_path) is ArchiveFormat.GZIP
    assert detect(seven_path) is ArchiveFormat.SEVEN_ZIP


def test_format_matches():
    assert ArchiveFormat.ZIP.matches(b'PK\x03\x04rest')
    assert not ArchiveFormat.ZIP.matches(b'Rar!\x1a\x07')
    assert not ArchiveFormat.UNKNOWN.matches(b'anything')
    assert ArchiveFormat.TAR.matches(b'\x00' * 257 + b'ustar')


@pytest.mark.parametrize('name,fmt,expected', [
    ('notes.txt.gz', ArchiveFormat.GZIP, 'notes.txt'),
    ('backup.tgz', ArchiveFormat.GZIP, 'backup.tar'),
    ('data.bz2', ArchiveFormat.BZIP2, 'data'),
    ('backup.tbz2', ArchiveFormat.BZIP2, 'backup.tar'),
    ('blob', ArchiveFormat.GZIP, 'blob.out'),
])
def test_stream_output_name(name, fmt, expected):
    assert stream_output_name(name, fmt) == expected


def test_extract_zip_overwrites_existing(tmp_path):
    out = tmp_path / 'out'
    (out / 'dir').mkdir(parents=True)
    (out / 'dir' / 'a.txt').write_bytes(b'old')
    src = _make_zip(tmp_path / 'in.zip', {'dir/a.txt': b'new', 'b.txt': b'bee'})

    result = extract(src, out)

    assert result.format is ArchiveFormat.ZIP
    assert (out / 'dir' / 'a.txt').read_bytes() == b'new'
    assert (out / 'b.txt').read_bytes() == b'bee'


def test_extract_tar_preserves_structure(tmp_path):
    src = _make_tar(tmp_path / 'in.tar', {'pkg/sub/deep.txt': b'deep', 'top.txt': b'top'})
    out = tmp_path / 'out'

    extract(src, out)

    assert (out / 'pkg' / 'sub' / 'deep.txt').read_bytes() == b'deep'
    assert (out / 'top.txt').read_bytes() == b'top'


def test_extract_tar_rejects_traversal(tmp_path):
    src = _make_tar(tmp_path / 'evil.tar', {'../evil.txt': b'x'})
    out = tmp_path / 'out'

    with pytest.raises(ExtractionError):
        extract(src, out)
    assert not (tmp_path / 'evil.txt').exists()


def test_extract_gzip_single_stream(tmp_path):
    src = tmp_path / 'notes.txt.gz'
    src.write_bytes(gzip.compress(b'line one\nline two\n'))

    extract(src, tmp_path)

    assert (tmp_path / 'notes.txt').read_bytes() == b'line one\nline two\n'


def test_extract_bzip2_single_stream(tmp_path):
    src = tmp_path / 'data.bz2'
    src.write_bytes(bz2.compress(b'payload'))

    result = extract(src, tmp_path / 'out')

    assert result.format is ArchiveFormat.BZIP2
    assert (tmp_path / 'out' / 'data').read_bytes() == b'payload'


def test_extract_7z(tmp_path):
    tree = tmp_path / 'tree'
    (tree / 'sub').mkdir(parents=True)
    (tree / 'a.txt').write_bytes(b'alpha')
    (tree / 'sub' / 'b.txt').write_bytes(b'beta')
    src = tmp_path / 'tree.7z'
    with py7zr.SevenZipFile(src, 'w') as szf:
        szf.writeall(tree, arcname='tree')
    out = tmp_path / 'out'

    result = extract(src, out)

    assert result.format is ArchiveFormat.SEVEN_ZIP
    assert (out / 'tree' / 'a.txt').read_bytes() == b'alpha'
    assert (out / 'tree' / 'sub' / 'b.txt').read_bytes() == b'beta'


def test_extract_corrupt_7z_is_extraction_error(tmp_path):
    src = tmp_path / 'broken.7z'
    src.write_bytes(b'7z\xbc\xaf\x27\x1c' + b'\x00' * 10)

    with pytest.raises(ExtractionError):
        extract(src, tmp_path / 'out')


def test_extract_rar_decoder_failure(tmp_path, monkeypatch):
    """A rar decoder failure is reported as ExtractionError, not unsupported format."""
    def _broken(*args, **kwargs):
        raise rarfile.BadRarFile('damaged')

    monkeypatch.setattr(archive.rarfile, 'RarFile', _broken)
    src = tmp_path / 'a.rar'
    src.write_bytes(b'Rar!\x1a\x07\x00' + b'\x00' * 32)

    with pytest.raises(ExtractionError, match='damaged'):
        extract(src, tmp_path / 'out')


def test_extract_rar_uses_decoder(tmp_path, monkeypatch):
    calls = {}

    class FakeInfo:
        filename = 'inner.txt'

    class FakeRar:
        def __init__(self, path):
            calls['path'] = path

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def infolist(self):
            return [FakeInfo()]

        def extractall(self, path):
            (path / 'inner.txt').write_bytes(b'from rar')

    monkeypatch.setattr(archive.rarfile, 'RarFile', FakeRar)
    src = tmp_path / 'a.rar'
    src.write_bytes(b'Rar!\x1a\x07\x00' + b'\x00' * 32)

    result = extract(src, tmp_path / 'out')

    assert result.format is ArchiveFormat.RAR
    assert calls['path'] == src
    assert (tmp_path / 'out' / 'inner.txt').read_bytes() == b'from rar'


def test_extract_unknown_touches_nothing(tmp_path):
    src = tmp_path / 'readme.txt'
    src.write_text('just text')
    out = tmp_path / 'out'

    with pytest.raises(UnsupportedFormatError):
        extract(src, out)
    assert not out.exists()


def test_extract_truncated_zip_is_extraction_error(tmp_path):
    src = tmp_path / 'cut.zip'
    src.write_bytes(b'PK\x03\x04' + b'\x00' * 8)

    with pytest.raises(ExtractionError):
        extract(src, tmp_path / 'out')
