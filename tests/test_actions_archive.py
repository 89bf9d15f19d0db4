"""Tests for the archive download and extraction adapter."""

import hashlib
import io
import json
import os
import tarfile
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import CURRENT_USER
from hostconverge.actions.archive import ArchiveAdapter
from hostconverge.errors import (
    ChecksumMismatchError,
    ConflictingStateError,
    NetworkFailureError,
    ResourceUnavailableError,
)

URL = 'https://downloads.example.com/site-1.2.tar.gz'


def make_tarball(files: dict[str, bytes], prefix: str = 'site-1.2') -> bytes:
    """Build a gzipped tarball in memory with every file under prefix/."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w:gz') as tar:
        if prefix:
            info = tarfile.TarInfo(prefix)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, data in files.items():
            info = tarfile.TarInfo(f"{prefix}/{name}" if prefix else name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def mock_response(payload: bytes, status_code: int = 200):
    response = MagicMock()
    response.status_code = status_code
    response.iter_content.return_value = [payload[i:i + 1024] for i in range(0, len(payload), 1024)]
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


@pytest.fixture
def tarball():
    return make_tarball({'index.html': b'<h1>hello</h1>\n', 'css/site.css': b'body{}\n'})


@pytest.fixture
def url_step(make_step, tmp_path, tarball):
    def _make(checksum=None, **extra):
        digest = checksum or f"sha256:{hashlib.sha256(tarball).hexdigest()}"
        return make_step('archive', url=URL, checksum=digest, dest=str(tmp_path / 'www'),
                         strip_components=1, **extra)
    return _make


class TestArchiveDownload:
    """Tests for URL archives."""

    def test_download_verify_extract(self, context, url_step, tmp_path, tarball):
        adapter = ArchiveAdapter(context)
        step = url_step()

        observed = adapter.resolve(step)
        assert not adapter.matches(step, observed)

        with patch('hostconverge.actions.archive.requests.get',
                   return_value=mock_response(tarball)) as mock_get:
            adapter.apply(step, observed)

        mock_get.assert_called_once()
        assert mock_get.call_args.kwargs['stream'] is True
        assert (tmp_path / 'www' / 'index.html').read_bytes() == b'<h1>hello</h1>\n'
        assert (tmp_path / 'www' / 'css' / 'site.css').exists()
        assert not (tmp_path / 'www' / 'site-1.2').exists()

        again = adapter.resolve(step)
        assert adapter.matches(step, again)

    def test_marker_contents(self, context, url_step, tarball):
        adapter = ArchiveAdapter(context)
        step = url_step()
        with patch('hostconverge.actions.archive.requests.get', return_value=mock_response(tarball)):
            adapter.apply(step, adapter.resolve(step))

        markers = list((context.state_dir / 'archives').glob('*.json'))
        assert len(markers) == 1
        marker = json.loads(markers[0].read_text())
        assert marker['digest'] == step.params['checksum']
        assert sorted(marker['members']) == ['css/site.css', 'index.html']
        assert marker['source'] == URL

    def test_checksum_mismatch_aborts_before_extraction(self, context, url_step, tmp_path, tarball):
        adapter = ArchiveAdapter(context)
        step = url_step(checksum=f"sha256:{'0' * 64}")

        with patch('hostconverge.actions.archive.requests.get', return_value=mock_response(tarball)):
            with pytest.raises(ChecksumMismatchError, match='expected sha256:0000'):
                adapter.apply(step, adapter.resolve(step))

        assert not (tmp_path / 'www').exists()
        downloads = context.state_dir / 'downloads'
        assert not any(downloads.iterdir())
        assert not (context.state_dir / 'archives').exists()

    def test_response_closed(self, context, url_step, tarball):
        """The streamed connection is released whether or not the digest matches."""
        good, bad = mock_response(tarball), mock_response(tarball)
        adapter = ArchiveAdapter(context)
        with patch('hostconverge.actions.archive.requests.get', return_value=good):
            adapter.apply(url_step(), adapter.resolve(url_step()))
        good.__exit__.assert_called_once()

        step = url_step(checksum=f"sha256:{'0' * 64}", download_path=str(context.state_dir / 'x'))
        with patch('hostconverge.actions.archive.requests.get', return_value=bad):
            with pytest.raises(ChecksumMismatchError):
                adapter.fetch(step, step.params['checksum'])
        bad.__exit__.assert_called_once()

    def test_ownership_drift_corrected_without_download(self, context, url_step, tmp_path, tarball):
        adapter = ArchiveAdapter(context)
        owned = url_step(owner=CURRENT_USER)
        with patch('hostconverge.actions.archive.requests.get', return_value=mock_response(tarball)):
            adapter.apply(owned, adapter.resolve(owned))
        assert adapter.matches(owned, adapter.resolve(owned))

        step = url_step(owner=str(os.getuid() + 1))
        observed = adapter.resolve(step)
        assert not observed.attributes_ok
        assert not adapter.matches(step, observed)

        with patch('hostconverge.actions.archive.requests.get') as mock_get, \
                patch('hostconverge.actions.archive.apply_attributes') as mock_attrs:
            adapter.apply(step, observed)
        mock_get.assert_not_called()
        chowned = sorted(str(c.args[0]) for c in mock_attrs.call_args_list)
        www = tmp_path / 'www'
        assert chowned == sorted([str(www), str(www / 'css/site.css'), str(www / 'index.html')])

    def test_cached_download_reused(self, context, url_step, tmp_path, tarball):
        adapter = ArchiveAdapter(context)
        step = url_step()
        with patch('hostconverge.actions.archive.requests.get', return_value=mock_response(tarball)):
            adapter.apply(step, adapter.resolve(step))

        # Someone deleted the extracted site; the verified download is still cached
        (tmp_path / 'www' / 'index.html').unlink()
        observed = adapter.resolve(step)
        assert not adapter.matches(step, observed)

        with patch('hostconverge.actions.archive.requests.get') as mock_get:
            adapter.apply(step, observed)
        mock_get.assert_not_called()
        assert (tmp_path / 'www' / 'index.html').exists()

    def test_changed_checksum_reextracts(self, context, url_step, make_step, tmp_path, tarball):
        adapter = ArchiveAdapter(context)
        with patch('hostconverge.actions.archive.requests.get', return_value=mock_response(tarball)):
            adapter.apply(url_step(), adapter.resolve(url_step()))

        newer = make_tarball({'index.html': b'<h1>v2</h1>\n'})
        step = url_step(checksum=f"sha256:{hashlib.sha256(newer).hexdigest()}")
        observed = adapter.resolve(step)
        assert not adapter.matches(step, observed)

        with patch('hostconverge.actions.archive.requests.get', return_value=mock_response(newer)):
            adapter.apply(step, observed)
        assert (tmp_path / 'www' / 'index.html').read_bytes() == b'<h1>v2</h1>\n'

    def test_not_found(self, context, url_step):
        adapter = ArchiveAdapter(context)
        step = url_step()
        with patch('hostconverge.actions.archive.requests.get',
                   return_value=mock_response(b'', status_code=404)):
            with pytest.raises(ResourceUnavailableError, match='404'):
                adapter.apply(step, adapter.resolve(step))

    def test_server_error(self, context, url_step):
        adapter = ArchiveAdapter(context)
        step = url_step()
        with patch('hostconverge.actions.archive.requests.get',
                   return_value=mock_response(b'', status_code=503)):
            with pytest.raises(NetworkFailureError):
                adapter.apply(step, adapter.resolve(step))

    def test_connection_error(self, context, url_step):
        adapter = ArchiveAdapter(context)
        step = url_step()
        with patch('hostconverge.actions.archive.requests.get',
                   side_effect=requests.ConnectionError('connection reset')):
            with pytest.raises(NetworkFailureError, match='connection reset'):
                adapter.apply(step, adapter.resolve(step))

    def test_download_path_override(self, context, url_step, tmp_path, tarball):
        adapter = ArchiveAdapter(context)
        target = tmp_path / 'site.tar.gz'
        step = url_step(download_path=str(target))
        with patch('hostconverge.actions.archive.requests.get', return_value=mock_response(tarball)):
            adapter.apply(step, adapter.resolve(step))
        assert target.read_bytes() == tarball


class TestArchiveLocal:
    """Tests for local source archives."""

    def test_local_src(self, context, make_step, tmp_path):
        src = tmp_path / 'bundle.tar.gz'
        src.write_bytes(make_tarball({'app.py': b'print(1)\n'}, prefix=''))
        adapter = ArchiveAdapter(context)
        step = make_step('archive', src=str(src), dest=str(tmp_path / 'app'))

        observed = adapter.resolve(step)
        assert not adapter.matches(step, observed)
        adapter.apply(step, observed)
        assert (tmp_path / 'app' / 'app.py').exists()
        assert adapter.matches(step, adapter.resolve(step))

    def test_local_src_checksum_mismatch(self, context, make_step, tmp_path):
        src = tmp_path / 'bundle.tar.gz'
        src.write_bytes(make_tarball({'app.py': b'x'}))
        adapter = ArchiveAdapter(context)
        step = make_step('archive', src=str(src), dest=str(tmp_path / 'app'),
                         checksum=f"sha256:{'f' * 64}")
        with pytest.raises(ChecksumMismatchError):
            adapter.apply(step, adapter.resolve(step))
        assert not (tmp_path / 'app').exists()

    def test_missing_src(self, context, make_step, tmp_path):
        step = make_step('archive', src=str(tmp_path / 'nope.tar'), dest=str(tmp_path / 'app'))
        with pytest.raises(ResourceUnavailableError):
            ArchiveAdapter(context).resolve(step)

    def test_dest_is_file(self, context, make_step, tmp_path):
        src = tmp_path / 'bundle.tar.gz'
        src.write_bytes(make_tarball({'a': b'x'}))
        (tmp_path / 'app').write_text('oops')
        step = make_step('archive', src=str(src), dest=str(tmp_path / 'app'))
        with pytest.raises(ConflictingStateError, match='not a directory'):
            ArchiveAdapter(context).resolve(step)

    def test_not_a_tarball(self, context, make_step, tmp_path):
        src = tmp_path / 'bundle.zip'
        src.write_bytes(b'PK\x03\x04 definitely not tar')
        step = make_step('archive', src=str(src), dest=str(tmp_path / 'app'))
        adapter = ArchiveAdapter(context)
        with pytest.raises(ConflictingStateError, match='not a readable tar'):
            adapter.apply(step, adapter.resolve(step))

    def test_path_traversal_refused(self, context, make_step, tmp_path):
        src = tmp_path / 'evil.tar.gz'
        src.write_bytes(make_tarball({'../escaped.txt': b'x'}, prefix=''))
        step = make_step('archive', src=str(src), dest=str(tmp_path / 'app'))
        adapter = ArchiveAdapter(context)
        with pytest.raises(ConflictingStateError, match='Unsafe member'):
            adapter.apply(step, adapter.resolve(step))
        assert not (tmp_path / 'escaped.txt').exists()
