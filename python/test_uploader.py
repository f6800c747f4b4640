"""UploadClient（ドライバー）のテスト"""
from unittest.mock import MagicMock, patch

import pytest

from multipart_uploader.client.transport import DirectTransport, UploadTransport
from multipart_uploader.client.uploader import UploadClient
from multipart_uploader.core.planner import PartPlanner
from multipart_uploader.errors import BackendError, ConfigError, NetworkError
from multipart_uploader.models.config import UploadOptions
from multipart_uploader.models.upload import (
    CompletedPart,
    UploadMode,
    UploadSession,
    UploadState,
)


def _multipart_session(size=2500, chunk_size=1024):
    plan = PartPlanner(min_part_size=chunk_size).plan(size, chunk_size)
    return UploadSession(
        key="sample.bin",
        mode=UploadMode.MULTIPART,
        total_size=size,
        chunk_size=chunk_size,
        upload_id="up-1",
        parts=list(plan.parts),
        state=UploadState.AWAITING_PARTS,
    )


@pytest.fixture
def transport():
    mock_transport = MagicMock(spec=UploadTransport)
    mock_transport.initiate.return_value = _multipart_session()
    mock_transport.upload_part.side_effect = lambda session, part, data: f"etag-{part.part_number}"
    return mock_transport


class TestDirectUpload:
    """ローカルディスクのストアを使った一連の流れ"""

    def test_multipart_upload(self, fs_store, small_options, make_file):
        path = make_file(2500)
        events = []
        client = UploadClient(DirectTransport(fs_store, small_options), small_options, on_progress=events.append)

        result = client.upload(path)

        assert result.success
        assert result.message == "Upload complete!"
        assert result.mode == UploadMode.MULTIPART
        with open(path, "rb") as f:
            assert b"".join(fs_store.get_object("sample.bin").body) == f.read()

        loaded = [e.loaded for e in events]
        assert loaded == sorted(loaded)
        assert events[-1].percentage == 100
        assert client.progress is None

    def test_simple_upload_reports_byte_progress(self, fs_store, make_file):
        options = UploadOptions(enable_progress=False)
        path = make_file(200000, "photo.jpg")
        events = []
        client = UploadClient(DirectTransport(fs_store, options), options, on_progress=events.append)

        result = client.upload(path, key="photos/photo.jpg")

        assert result.success
        assert result.mode == UploadMode.SIMPLE
        assert fs_store.get_object("photos/photo.jpg").size == 200000
        # 64KBずつ読まれるので途中経過が複数回届く
        assert len(events) > 2
        assert events[0].loaded == 64 * 1024
        assert events[-1].percentage == 100

    def test_empty_file(self, fs_store, small_options, make_file):
        path = make_file(0, "empty.txt")
        client = UploadClient(DirectTransport(fs_store, small_options), small_options)

        result = client.upload(path)

        assert result.success
        assert fs_store.get_object("empty.txt").size == 0

    def test_file_too_large_for_backend(self, fs_store, make_file):
        options = UploadOptions(chunk_size=1024, min_part_size=1024, max_parts=2, enable_progress=False)
        path = make_file(2500)
        client = UploadClient(DirectTransport(fs_store, options), options)

        result = client.upload(path)

        assert not result.success
        assert result.message.startswith("Upload failed: ")
        assert "3 parts" in result.message
        assert fs_store.list_objects() == []

    def test_download(self, fs_store, small_options, make_file, tmp_path):
        fs_store.put_object("docs/report.pdf", b"%PDF-1.4 data")
        client = UploadClient(DirectTransport(fs_store, small_options), small_options)
        dest = tmp_path / "downloads"
        dest.mkdir()

        path = client.download("docs/report.pdf", str(dest))

        assert path == str(dest / "report.pdf")
        assert (dest / "report.pdf").read_bytes() == b"%PDF-1.4 data"

    def test_list_objects(self, fs_store, small_options):
        fs_store.put_object("a.txt", b"1")
        client = UploadClient(DirectTransport(fs_store, small_options), small_options)

        assert [o.key for o in client.list_objects()] == ["a.txt"]


class TestFailureHandling:
    def test_part_failure_aborts_and_never_completes(self, transport, small_options, make_file):
        def upload_part(session, part, data):
            if part.part_number == 2:
                raise BackendError("Failed to upload part (Status: 500)")
            return f"etag-{part.part_number}"
        transport.upload_part.side_effect = upload_part
        client = UploadClient(transport, small_options)

        result = client.upload(make_file(2500))

        assert not result.success
        assert result.message == "Upload failed: Failed to upload part (Status: 500)"
        transport.abort.assert_called_once()
        transport.complete.assert_not_called()
        assert client.progress is None

    def test_network_errors_are_retried(self, transport, make_file):
        options = UploadOptions(chunk_size=1024, min_part_size=1024, max_retries=2, enable_progress=False)
        attempts = {"count": 0}

        def upload_part(session, part, data):
            if part.part_number == 2 and attempts["count"] < 2:
                attempts["count"] += 1
                raise NetworkError("connection reset")
            return f"etag-{part.part_number}"
        transport.upload_part.side_effect = upload_part
        client = UploadClient(transport, options)

        with patch("multipart_uploader.client.uploader.time.sleep") as mock_sleep:
            result = client.upload(make_file(2500))

        assert result.success
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]
        session, parts = transport.complete.call_args.args
        assert parts == [CompletedPart(1, "etag-1"), CompletedPart(2, "etag-2"), CompletedPart(3, "etag-3")]
        transport.abort.assert_not_called()

    def test_retries_exhausted(self, transport, make_file):
        options = UploadOptions(chunk_size=1024, min_part_size=1024, max_retries=1, enable_progress=False)
        transport.upload_part.side_effect = NetworkError("timeout")
        client = UploadClient(transport, options)

        with patch("multipart_uploader.client.uploader.time.sleep"):
            result = client.upload(make_file(2500))

        assert not result.success
        assert transport.upload_part.call_count == 2
        transport.abort.assert_called_once()

    def test_failed_completion_aborts(self, transport, small_options, make_file):
        transport.complete.side_effect = BackendError("Failed to complete multipart upload")
        client = UploadClient(transport, small_options)

        result = client.upload(make_file(2500))

        assert not result.success
        transport.abort.assert_called_once()

    def test_abort_failure_does_not_crash(self, transport, small_options, make_file):
        transport.upload_part.side_effect = BackendError("boom")
        transport.abort.side_effect = NetworkError("relay unreachable")
        client = UploadClient(transport, small_options)

        result = client.upload(make_file(2500))

        assert not result.success
        assert result.message == "Upload failed: boom"

    def test_initiate_failure_does_not_abort(self, transport, small_options, make_file):
        transport.initiate.side_effect = ConfigError("File would require 10240 parts")
        client = UploadClient(transport, small_options)

        result = client.upload(make_file(10))

        assert not result.success
        transport.abort.assert_not_called()

    def test_file_changed_during_upload(self, transport, small_options, make_file):
        transport.initiate.return_value = _multipart_session(size=5000)
        client = UploadClient(transport, small_options)

        result = client.upload(make_file(2500))

        assert not result.success
        assert "File changed" in result.message
        transport.abort.assert_called_once()

    def test_missing_file(self, transport, small_options, tmp_path):
        client = UploadClient(transport, small_options)
        with pytest.raises(ValueError):
            client.upload(str(tmp_path / "nope.bin"))


def test_failed_simple_upload_releases_session(fs_store, small_options, make_file):
    transport = DirectTransport(fs_store, small_options)
    client = UploadClient(transport, small_options)

    with patch.object(fs_store, "put_object", side_effect=BackendError("boom")):
        result = client.upload(make_file(100))

    assert not result.success
    assert result.message == "Upload failed: boom"
    assert transport._coordinators == {}
