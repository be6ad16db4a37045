"""Tests for the retry combinator and the four pipeline phases."""

import os
from dataclasses import replace

import pytest

from conftest import API, failed, ok
from enhance_errors import AuthError, DownloadError, PollTimeoutError, ProcessError, UploadError
from single_enhance import (
    FileJob,
    download_result,
    enhance_file,
    poll_until_finished,
    process_image,
    upload_image,
    with_retries,
    write_atomically,
)

REFRESH = f"{API}/auth/refresh"
UPLOAD = f"{API}/api/images/upload"
PROCESS = f"{API}/api/images/process"
IN_PROCESS = f"{API}/api/images/in-process"
SIGNED = "https://cdn.test/signed/a.png?sig=1"


def _finished(version="boring", url=SIGNED):
    return ok([{"status": "finished", "versions": {version: {"download_url": url}}}])


@pytest.fixture
def job(tmp_path):
    source_dir = tmp_path / "src"
    dest_dir = tmp_path / "dest"
    source_dir.mkdir()
    dest_dir.mkdir()
    (source_dir / "a.png").write_bytes(b"original")
    return FileJob.for_name(str(source_dir), str(dest_dir), "a.png")


# =============================================================================
# with_retries
# =============================================================================

class RecordingSleep:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


@pytest.mark.asyncio
async def test_with_retries_stops_at_first_success():
    values = iter([False, False, True, True])
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        return next(values)

    outcome = await with_retries(operation, 5, lambda v: v)

    assert outcome.succeeded
    assert outcome.attempts == 3
    assert calls == [1, 2, 3]


@pytest.mark.asyncio
async def test_with_retries_exhausts_and_reports_last_value():
    failures = []

    async def operation(attempt):
        return f"error {attempt}"

    outcome = await with_retries(
        operation, 3, lambda v: v is None, on_failure=lambda n, v: failures.append((n, v))
    )

    assert not outcome.succeeded
    assert outcome.value == "error 3"
    assert failures == [(1, "error 1"), (2, "error 2"), (3, "error 3")]


@pytest.mark.asyncio
async def test_with_retries_waits_only_between_attempts():
    sleep = RecordingSleep()

    async def operation(attempt):
        return False

    await with_retries(operation, 4, lambda v: v, interval_sec=15, sleep=sleep)

    assert sleep.waits == [15, 15, 15]


@pytest.mark.asyncio
async def test_with_retries_does_not_retry_exceptions():
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        raise AuthError("refresh failed")

    with pytest.raises(AuthError):
        await with_retries(operation, 5)

    assert calls == [1]


# =============================================================================
# Upload
# =============================================================================

@pytest.mark.asyncio
async def test_upload_sends_multipart_with_declared_type(transport, session, options, job):
    transport.add("POST", UPLOAD, ok({"images": [{"id": "img-1"}]}))

    image_id = await upload_image(session, job, replace(options, output_type="JPEG"))

    assert image_id == "img-1"
    assert job.remote_image_id == "img-1"
    form_file = transport.calls[0].kwargs["form_file"]
    assert form_file.field == "files"
    assert form_file.filename == "a.png"
    assert form_file.content_type == "image/jpeg"
    assert form_file.path == job.source_path


@pytest.mark.asyncio
async def test_upload_401_then_success_refreshes_once(transport, session, options, job):
    transport.add("POST", UPLOAD, ok(None, status=401), ok({"images": [{"id": "img-1"}]}))
    transport.add("POST", REFRESH, ok({"access_token": "access-2"}))

    await upload_image(session, job, replace(options, attempts=6))

    uploads = transport.calls_to("POST", UPLOAD)
    assert len(uploads) == 2
    assert len(transport.calls_to("POST", REFRESH)) == 1
    assert uploads[0].bearer == "Bearer access-1"
    assert uploads[1].bearer == "Bearer access-2"


@pytest.mark.asyncio
async def test_upload_malformed_body_exhausts_attempts(transport, session, options, job, capsys):
    transport.add("POST", UPLOAD, ok({"images": []}))

    with pytest.raises(UploadError) as exc:
        await upload_image(session, job, replace(options, attempts=3))

    assert len(transport.calls_to("POST", UPLOAD)) == 3
    assert "Could not upload file" in exc.value.message
    assert "Unexpected body" in exc.value.message
    assert "(attempt 3)" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_upload_refresh_failure_is_not_retried(transport, session, options, job):
    transport.add("POST", UPLOAD, ok(None, status=401))
    transport.add("POST", REFRESH, ok(None, status=403))

    with pytest.raises(AuthError):
        await upload_image(session, job, replace(options, attempts=6))

    assert len(transport.calls_to("POST", UPLOAD)) == 1


# =============================================================================
# Process
# =============================================================================

@pytest.mark.asyncio
async def test_process_sends_mod_string(transport, session, options, job):
    job.remote_image_id = "img-1"
    transport.add("POST", PROCESS, ok([{"id": "job-1"}]))

    await process_image(session, job, replace(options, version="magic", output_type="JPEG"))

    assert transport.calls[0].kwargs["json_body"] == [{"original_id": "img-1", "mod": "magic Auto JPEG"}]


@pytest.mark.asyncio
async def test_process_retries_then_fails(transport, session, options, job):
    job.remote_image_id = "img-1"
    transport.add("POST", PROCESS, failed("Read Error: reset", "read"))

    with pytest.raises(ProcessError, match="Could not process file"):
        await process_image(session, job, options)

    assert len(transport.calls_to("POST", PROCESS)) == options.attempts


# =============================================================================
# Poll
# =============================================================================

@pytest.mark.asyncio
async def test_poll_until_finished_on_third_attempt(transport, session, options, job):
    job.remote_image_id = "img-1"
    transport.add(
        "POST",
        IN_PROCESS,
        ok([{"status": "processing"}]),
        ok([{"status": "processing"}]),
        _finished(url="X"),
    )
    transport.add("GET", "X", ok(b"enhanced"))

    body = await poll_until_finished(session, job, options)
    await download_result(session, job, options, body)

    assert len(transport.calls_to("POST", IN_PROCESS)) == 3
    assert transport.calls[0].kwargs["json_body"] == {"ids": ["img-1"]}
    assert job.remote_status == "finished"
    assert transport.calls[-1].method == "GET"
    assert transport.calls[-1].url == "X"


@pytest.mark.asyncio
async def test_poll_errors_count_as_not_finished(transport, session, options, job):
    job.remote_image_id = "img-1"
    transport.add("POST", IN_PROCESS, failed(), ok([{"status": "processing"}]), _finished())

    await poll_until_finished(session, job, options)

    assert len(transport.calls_to("POST", IN_PROCESS)) == 3


@pytest.mark.asyncio
async def test_poll_timeout_uses_triple_budget(transport, session, options, job):
    job.remote_image_id = "img-1"
    transport.add("POST", IN_PROCESS, ok([{"status": "processing"}]))
    waits = []

    async def sleep(seconds):
        waits.append(seconds)

    with pytest.raises(PollTimeoutError) as exc:
        await poll_until_finished(session, job, replace(options, attempts=2), sleep=sleep)

    assert len(transport.calls_to("POST", IN_PROCESS)) == 6
    assert len(waits) == 5
    assert '"status": "processing"' in exc.value.message
    assert "--progressInterval" in exc.value.message


@pytest.mark.asyncio
async def test_poll_timeout_when_last_attempt_errors(transport, session, options, job):
    job.remote_image_id = "img-1"
    transport.add("POST", IN_PROCESS, ok([{"status": "processing"}]), failed("Connection Error: gone"))

    with pytest.raises(PollTimeoutError) as exc:
        await poll_until_finished(session, job, replace(options, attempts=1))

    assert '"status": "processing"' in exc.value.message
    assert "Connection Error: gone" in exc.value.message


# =============================================================================
# Download
# =============================================================================

@pytest.mark.asyncio
async def test_download_writes_identical_bytes(transport, session, options, job):
    payload = bytes(range(256)) * 4
    transport.add("GET", SIGNED, ok(payload))

    written = await download_result(session, job, options, _finished().body)

    with open(job.dest_path, "rb") as f:
        assert f.read() == payload
    assert written == len(payload)
    assert job.download_url == SIGNED
    call = transport.calls[0]
    assert call.kwargs["raw"] is True
    assert call.kwargs["timeout_sec"] == options.download_timeout_sec
    assert "headers" not in call.kwargs
    assert not os.path.exists(job.dest_path + ".part")


@pytest.mark.asyncio
async def test_download_uses_selected_version(transport, session, options, job):
    body = [{"status": "finished", "versions": {
        "boring": {"download_url": "https://cdn.test/boring"},
        "magic": {"download_url": "https://cdn.test/magic"},
    }}]
    transport.add("GET", "https://cdn.test/magic", ok(b"m"))

    await download_result(session, job, replace(options, version="magic"), body)

    assert transport.calls[0].url == "https://cdn.test/magic"


@pytest.mark.asyncio
async def test_download_names_connection_failures(transport, session, options, job):
    transport.add("GET", SIGNED, failed("Connection Error: refused", "connection"))

    with pytest.raises(DownloadError) as exc:
        await download_result(session, job, options, _finished().body)

    assert "Request error [Connection]" in exc.value.message
    assert len(transport.calls) == options.attempts
    assert not os.path.exists(job.dest_path)


@pytest.mark.asyncio
async def test_download_names_read_failures(transport, session, options, job):
    transport.add("GET", SIGNED, failed("Request Timeout", "read"), ok(b"late"))

    await download_result(session, job, options, _finished().body)

    with open(job.dest_path, "rb") as f:
        assert f.read() == b"late"


@pytest.mark.asyncio
async def test_download_without_url_for_version(transport, session, options, job):
    with pytest.raises(DownloadError, match="No download URL for version 'boring'"):
        await download_result(session, job, options, _finished(version="magic").body)

    assert transport.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("url", [12345, ["https://cdn.test/a"], ""])
async def test_download_rejects_non_string_url(transport, session, options, job, url):
    with pytest.raises(DownloadError, match="No download URL"):
        await download_result(session, job, options, _finished(url=url).body)

    assert transport.calls == []


def test_write_atomically_cleans_up_partial_file(tmp_path):
    target = tmp_path / "missing-dir" / "a.png"

    with pytest.raises(OSError):
        write_atomically(str(target), b"data")

    assert not (tmp_path / "missing-dir").exists()


def test_write_atomically_replaces_existing_file(tmp_path):
    target = tmp_path / "a.png"
    target.write_bytes(b"old")

    size = write_atomically(str(target), b"new-bytes")

    assert target.read_bytes() == b"new-bytes"
    assert size == 9
    assert not (tmp_path / "a.png.part").exists()


# =============================================================================
# Whole pipeline
# =============================================================================

@pytest.mark.asyncio
async def test_enhance_file_success(transport, session, options, job):
    transport.add("POST", UPLOAD, ok({"images": [{"id": "img-1"}]}))
    transport.add("POST", PROCESS, ok([]))
    transport.add("POST", IN_PROCESS, _finished())
    transport.add("GET", SIGNED, ok(b"enhanced"))

    outcome = await enhance_file(session, job, options)

    assert outcome.success
    assert outcome.error is None
    assert outcome.bytes_written == len(b"enhanced")
    assert [c.url for c in transport.calls] == [UPLOAD, PROCESS, IN_PROCESS, SIGNED]


@pytest.mark.asyncio
async def test_enhance_file_failed_phase_short_circuits(transport, session, options, job):
    transport.add("POST", UPLOAD, ok({"images": [{"id": "img-1"}]}))
    transport.add("POST", PROCESS, ok({"detail": "quota"}, status=402))

    outcome = await enhance_file(session, job, options)

    assert not outcome.success
    assert outcome.error_kind == "process"
    assert "Status code: 402" in outcome.error
    assert transport.calls_to("POST", IN_PROCESS) == []
    assert not os.path.exists(job.dest_path)


@pytest.mark.asyncio
async def test_enhance_file_propagates_auth_errors(transport, session, options, job):
    transport.add("POST", UPLOAD, ok(None, status=401))
    transport.add("POST", REFRESH, failed())

    with pytest.raises(AuthError):
        await enhance_file(session, job, options)
