from urllib.parse import parse_qs, urlsplit

from bgvideo_service.api import app, get_pipeline
from bgvideo_service.composition import VideoComposer
from bgvideo_service.pipeline import Pipeline

from .conftest import FakeHttp, FakeRenderer, FakeResponse, make_image_bytes


def upload(client, data=None, filename="processed-image.png", content_type="image/png"):
    data = make_image_bytes() if data is None else data
    return client.post("/upload", files={"image": (filename, data, content_type)})


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_upload_returns_key_path_and_link(client, store):
    data = make_image_bytes(size=(20, 20))
    resp = upload(client, data)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["s3Key"].startswith("uploads/")
    assert body["imagePath"].startswith("uploads/")
    assert store.get(body["s3Key"]) == data

    fetched = client.get(body["imageUrl"])
    assert fetched.status_code == 200
    assert fetched.content == data
    assert fetched.headers["content-type"] == "image/png"


def test_upload_without_file_is_rejected(client):
    resp = client.post("/upload")
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"].startswith("Invalid request: image: ")
    assert "required" in body["error"].lower()


def test_upload_of_non_image_is_an_error(client):
    resp = upload(client, b"not an image at all")
    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert resp.json()["error"]


def test_create_video_from_uploaded_key(client, store, renderer):
    uploaded = upload(client).json()

    resp = client.post("/create-video", json={"s3Key": uploaded["s3Key"], "text": "Welcome"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["videoId"] == renderer.requests[0].render_id
    assert renderer.requests[0].text == "Welcome"

    video = client.get(body["videoUrl"])
    assert video.status_code == 200
    assert video.headers["content-type"] == "video/mp4"
    assert video.content == store.get(f"videos/hosamani-family-video-{body['videoId']}.mp4")


def test_create_video_from_image_path(client):
    uploaded = upload(client).json()
    resp = client.post("/create-video", json={"imagePath": uploaded["imagePath"]})
    assert resp.status_code == 200
    assert resp.json()["success"] is True


def test_create_video_with_unknown_key_stores_nothing(client, store, renderer):
    resp = client.post("/create-video", json={"s3Key": "uploads/nope.png"})

    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert renderer.requests == []
    assert not (store.root / "videos").exists()


def test_create_video_without_source(client):
    resp = client.post("/create-video", json={})
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "No image source provided (neither s3Key nor imagePath)"}


def test_create_video_rejects_escaping_path(client):
    resp = client.post("/create-video", json={"imagePath": "../../etc/passwd"})
    assert resp.status_code == 500
    assert "uploads directory" in resp.json()["error"]


def test_upload_url_stores_remote_image(client, store, composer, settings):
    data = make_image_bytes(fmt="JPEG")
    http = FakeHttp(FakeResponse(data, headers={"Content-Type": "image/jpeg"}))
    app.dependency_overrides[get_pipeline] = lambda: Pipeline(store, composer, settings=settings, http=http)

    resp = client.post("/upload-url", json={"url": "https://example.com/cat.jpg"})

    assert resp.status_code == 200
    assert resp.json()["s3Key"].startswith("uploads/url-image-")
    assert store.get(resp.json()["s3Key"]) == data


def test_upload_url_requires_valid_url(client):
    resp = client.post("/upload-url", json={"url": "not a url"})
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Invalid request: url: ")


def test_signed_links_expire(client, clock):
    url = upload(client).json()["imageUrl"]
    assert client.get(url).status_code == 200

    clock.advance(3601)
    resp = client.get(url)
    assert resp.status_code == 403
    assert resp.json()["success"] is False


def test_tampered_signature_is_refused(client):
    url = upload(client).json()["imageUrl"]
    parts = urlsplit(url)
    query = parse_qs(parts.query)
    resp = client.get(parts.path, params={"expires": query["expires"][0], "signature": "0" * 64})
    assert resp.status_code == 403


def test_slow_render_times_out_without_storing(client, store, settings):
    settings.render_timeout_seconds = 0.05
    renderer = FakeRenderer(delay=0.3)
    slow = Pipeline(store, VideoComposer(settings, renderer=renderer), settings=settings)
    app.dependency_overrides[get_pipeline] = lambda: slow
    key = upload(client).json()["s3Key"]

    resp = client.post("/create-video", json={"s3Key": key})

    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert renderer.requests
    assert not (store.root / "videos").exists()
    assert list(settings.temp_dir.iterdir()) == []
