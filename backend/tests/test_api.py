"""API tests with the transcoder replaced by a fake."""
import pytest
from fastapi.testclient import TestClient

from conftest import FakeTranscoder, probe_metadata
from video_converter.conversion.service import ConversionService, get_conversion_service
from video_converter.main import app

SESSION = {"X-Session-ID": "test-session"}


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def client(upload_dir, transcoder):
    svc = ConversionService(transcoder, strict=False)
    app.dependency_overrides[get_conversion_service] = lambda: svc
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    svc.close()


def _upload(client, name="sample.mp4", data=b"fake video data", content_type="video/mp4"):
    return client.post("/api/video/upload", files={"file": (name, data, content_type)}, headers=SESSION)


class TestInfoEndpoints:
    def test_health(self, client):
        assert client.get("/api/video/health").json() == {"status": "ok"}

    def test_formats(self, client):
        body = client.get("/api/video/formats").json()
        assert body["output"] == ["mp4", "webm", "avi", "mov", "mkv"]
        assert body["upload"] == ["mp4", "avi", "mov", "mkv", "wmv"]

    def test_limits(self, client):
        body = client.get("/api/video/limits").json()
        assert body["max_upload_size_mb"] == 500

    def test_session_id_generated_when_missing(self, client):
        response = client.get("/api/video/session/stats")
        assert response.headers.get("X-Session-ID")


class TestUpload:
    def test_valid_upload(self, client, upload_dir):
        response = _upload(client)
        assert response.status_code == 200
        body = response.json()
        assert body["originalName"] == "sample.mp4"
        assert body["fileSize"] == len(b"fake video data")
        assert body["fileType"] == "video/mp4"
        assert body["fileName"].endswith(".mp4")
        assert (upload_dir / body["fileName"]).read_bytes() == b"fake video data"

    def test_invalid_extension(self, client):
        response = _upload(client, name="notes.txt", content_type="text/plain")
        assert response.status_code == 400
        assert "Allowed types" in response.json()["detail"]

    def test_empty_file(self, client):
        response = _upload(client, data=b"")
        assert response.status_code == 400
        assert response.json()["detail"] == "No file was uploaded."

    def test_missing_file_field(self, client):
        response = client.post("/api/video/upload", headers=SESSION)
        assert response.status_code == 400

    def test_upload_is_recorded(self, client):
        _upload(client)
        _upload(client, name="bad.txt")
        activities = client.get("/api/video/session/activities", headers=SESSION).json()["activities"]
        assert [(a["kind"], a["status"]) for a in activities] == [("upload", "failed"), ("upload", "completed")]


class TestConvert:
    def test_upload_then_convert_to_webm(self, client, transcoder, upload_dir):
        stored = _upload(client).json()["fileName"]
        response = client.post(
            "/api/video/convert", json={"fileName": stored, "outputFormat": "webm"}, headers=SESSION
        )
        assert response.status_code == 200
        body = response.json()
        stem = stored.rsplit(".", 1)[0]
        assert body == {"originalFile": stored, "convertedFile": f"{stem}.webm", "duration": 65.0}
        assert (upload_dir / f"{stem}.webm").is_file()

        call = transcoder.transcode_calls[0]
        assert (call["video_codec"], call["audio_codec"]) == ("vp9", "vorbis")
        assert (call["video_bitrate"], call["audio_bitrate"]) == (2_000_000, 128_000)

        stats = client.get("/api/video/session/stats", headers=SESSION).json()
        assert stats["videos_uploaded"] == 1
        assert stats["videos_converted"] == 1
        assert stats["media_seconds_converted"] == 65.0

    def test_format_is_normalized(self, client):
        stored = _upload(client).json()["fileName"]
        response = client.post("/api/video/convert", json={"fileName": stored, "outputFormat": ".MKV"})
        assert response.json()["convertedFile"].endswith(".mkv")

    @pytest.mark.parametrize("payload, detail", [
        ({"outputFormat": "webm"}, "File name is required"),
        ({"fileName": "x.mp4"}, "Output format is required"),
        ({"fileName": "x.mp4", "outputFormat": "flv"}, "Invalid output format. Allowed formats: mp4, webm, avi, mov, mkv"),
    ])
    def test_bad_requests(self, client, payload, detail):
        response = client.post("/api/video/convert", json=payload)
        assert response.status_code == 400
        assert response.json()["detail"] == detail

    def test_unknown_file(self, client):
        response = client.post("/api/video/convert", json={"fileName": "missing.mp4", "outputFormat": "webm"})
        assert response.status_code == 404
        assert response.json()["detail"] == "File not found"

    def test_path_traversal_rejected(self, client):
        response = client.post("/api/video/convert", json={"fileName": "../etc.mp4", "outputFormat": "webm"})
        assert response.status_code == 400

    def test_no_video_stream(self, client, transcoder):
        transcoder.metadata = probe_metadata(video=False)
        stored = _upload(client).json()["fileName"]
        response = client.post("/api/video/convert", json={"fileName": stored, "outputFormat": "webm"})
        assert response.status_code == 400
        assert response.json()["detail"] == "No video stream found in the input file"

    def test_transcoder_error_is_not_leaked(self, client, transcoder):
        transcoder.error = RuntimeError("/opt/ffmpeg/bin/ffmpeg: segmentation fault")
        stored = _upload(client).json()["fileName"]
        response = client.post("/api/video/convert", json={"fileName": stored, "outputFormat": "webm"})
        assert response.status_code == 500
        assert response.json()["detail"] == "An error occurred during video conversion"

    def test_closed_service(self, client, upload_dir):
        stored = _upload(client).json()["fileName"]
        closed = ConversionService(FakeTranscoder())
        closed.close()
        app.dependency_overrides[get_conversion_service] = lambda: closed
        response = client.post("/api/video/convert", json={"fileName": stored, "outputFormat": "webm"})
        assert response.status_code == 503


class TestBackgroundConvert:
    def test_convert_async_and_poll(self, client):
        stored = _upload(client).json()["fileName"]
        response = client.post(
            "/api/video/convert-async", json={"fileName": stored, "outputFormat": "avi"}, headers=SESSION
        )
        assert response.status_code == 200
        task_id = response.json()["taskId"]

        # TestClient runs background tasks before returning the response
        task = client.get(f"/api/video/task/{task_id}").json()
        assert task["status"] == "completed"
        assert task["progress"] == 100.0
        assert task["convertedFile"].endswith(".avi")
        assert task["duration"] == 65.0
        assert task["succeeded"] is True

    def test_convert_async_validates_first(self, client):
        response = client.post("/api/video/convert-async", json={"fileName": "missing.mp4", "outputFormat": "webm"})
        assert response.status_code == 404

    def test_unknown_task(self, client):
        assert client.get("/api/video/task/nope").status_code == 404
        assert client.delete("/api/video/task/nope").status_code == 404

    def test_cancel_finished_task(self, client):
        stored = _upload(client).json()["fileName"]
        task_id = client.post(
            "/api/video/convert-async", json={"fileName": stored, "outputFormat": "mp4"}
        ).json()["taskId"]
        assert client.delete(f"/api/video/task/{task_id}").status_code == 409


class TestDownload:
    def test_download_converted_file(self, client):
        stored = _upload(client).json()["fileName"]
        converted = client.post(
            "/api/video/convert", json={"fileName": stored, "outputFormat": "webm"}
        ).json()["convertedFile"]
        response = client.get(f"/api/video/download/{converted}")
        assert response.status_code == 200
        assert response.content == b"converted:fake video data"

    def test_download_missing(self, client):
        assert client.get("/api/video/download/missing.webm").status_code == 404

    def test_download_only_video_outputs(self, client, upload_dir):
        upload_dir.mkdir(parents=True, exist_ok=True)
        (upload_dir / "secrets.txt").write_text("nope")
        assert client.get("/api/video/download/secrets.txt").status_code == 404
