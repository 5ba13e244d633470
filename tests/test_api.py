"""End-to-end tests through the HTTP surface."""
import logging

from conftest import MiB, make_payload, split_chunks

FILE_SIZE = 2 * MiB + MiB // 2


def post_chunk(client, file_id, file_name, data, index, total, chunk_size=MiB, file_size=None):
    return client.post(
        "/u",
        data={
            "fileId": file_id,
            "fileName": file_name,
            "fileSize": str(len(data) if file_size is None else file_size),
            "chunkIndex": str(index),
            "chunkSize": str(chunk_size),
            "totalChunks": str(total),
        },
        files={"chunk": ("blob", data, "application/octet-stream")},
    )


def upload(client, file_id, file_name, data, chunk_size=MiB):
    chunks = split_chunks(data, chunk_size)
    responses = [
        post_chunk(client, file_id, file_name, chunk, i, len(chunks), chunk_size, file_size=len(data))
        for i, chunk in enumerate(chunks)
    ]
    return responses


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "File Server API"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["uptime"] >= 0
    assert isinstance(body["timestamp"], int)


def test_upload_download_delete_flow(client):
    data = make_payload(FILE_SIZE)
    responses = upload(client, "movie1", "My Movie.mp4", data)

    assert [r.status_code for r in responses] == [200, 200, 200]
    assert responses[0].json() == {
        "message": "Chunk uploaded successfully",
        "fileId": "movie1",
        "done": False,
        "fileName": "my-movie.mp4",
        "chunkIndex": 1,
        "totalChunks": 3,
    }
    final = responses[-1].json()
    assert final["message"] == "File uploaded successfully"
    assert final["done"] is True
    assert "chunkIndex" not in final
    token = final["deleteToken"]
    assert len(token) == 48

    response = client.get("/movie1")
    assert response.status_code == 200
    assert response.content == data
    assert response.headers["content-type"] == "video/mp4"
    assert response.headers["content-length"] == str(FILE_SIZE)
    assert response.headers["accept-ranges"] == "bytes"
    assert response.headers["content-disposition"] == 'attachment; filename="my-movie.mp4"'

    response = client.request("DELETE", "/movie1", json={"token": token})
    assert response.status_code == 200
    assert response.json() == {"message": "File deleted successfully", "fileId": "movie1"}

    assert client.get("/movie1").status_code == 404
    assert client.request("DELETE", "/movie1", json={"token": token}).status_code == 404


def test_ranged_download(client):
    data = make_payload(FILE_SIZE)
    upload(client, "ranged", "clip.mp4", data)

    response = client.get("/ranged", headers={"Range": f"bytes={MiB}-"})
    assert response.status_code == 206
    assert response.headers["content-range"] == f"bytes {MiB}-{2 * MiB - 1}/{FILE_SIZE}"
    assert response.headers["content-length"] == str(MiB)
    assert response.content == data[MiB:2 * MiB]

    response = client.get("/ranged", headers={"Range": f"bytes={2 * MiB + 100}-"})
    assert response.status_code == 206
    assert response.headers["content-range"] == f"bytes {2 * MiB + 100}-{FILE_SIZE - 1}/{FILE_SIZE}"
    assert response.content == data[2 * MiB + 100:]


def test_closed_range_is_served_whole(client):
    data = make_payload(FILE_SIZE)
    upload(client, "closed", "clip.mp4", data)

    response = client.get("/closed", headers={"Range": "bytes=0-10"})
    assert response.status_code == 200
    assert response.content == data


def test_range_past_end(client):
    upload(client, "short", "clip.mp4", make_payload(FILE_SIZE))

    response = client.get("/short", headers={"Range": f"bytes={FILE_SIZE}-"})
    assert response.status_code == 416
    assert response.headers["content-range"] == f"bytes */{FILE_SIZE}"


def test_missing_fields(client):
    response = client.post("/u", data={"fileId": "x", "fileName": "a.bin"})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing required fields"}


def test_chunk_size_out_of_bounds(client):
    response = post_chunk(client, "tiny", "a.bin", b"abc", 0, 1, chunk_size=1000)
    assert response.status_code == 400
    assert response.json()["chunk_size"] == 1000


def test_upload_to_completed_file(client, fake_backend):
    upload(client, "done", "a.bin", b"payload")
    attempts = fake_backend.upload_attempts

    response = post_chunk(client, "done", "a.bin", b"payload", 0, 1)
    assert response.status_code == 409
    assert response.json()["fileId"] == "done"
    assert fake_backend.upload_attempts == attempts


def test_backend_failure(client, fake_backend):
    fake_backend.upload_failures = 1

    response = post_chunk(client, "broken", "a.bin", b"payload", 0, 1)
    assert response.status_code == 500
    assert response.json() == {
        "message": "Failed to upload chunk",
        "error": "Bad Request: simulated failure",
    }

    # Nothing was recorded, so the same chunk can be sent again.
    response = post_chunk(client, "broken", "a.bin", b"payload", 0, 1)
    assert response.status_code == 200
    assert response.json()["done"] is True


def test_unknown_file(client):
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}


def test_incomplete_file_is_not_served(client):
    post_chunk(client, "partial", "a.bin", make_payload(MiB), 0, 2, file_size=2 * MiB)
    response = client.get("/partial")
    assert response.status_code == 404


def test_delete_errors(client):
    token = upload(client, "victim", "a.bin", b"payload")[-1].json()["deleteToken"]

    assert client.request("DELETE", "/victim").status_code == 400
    assert client.request("DELETE", "/victim", json={}).status_code == 400

    response = client.request("DELETE", "/victim", json={"token": "0" * 48})
    assert response.status_code == 403
    assert response.json() == {"error": "Invalid delete token"}

    assert client.request("DELETE", "/victim", json={"token": token}).status_code == 200


def test_delete_before_completion(client):
    post_chunk(client, "pending", "a.bin", make_payload(MiB), 0, 2, file_size=2 * MiB)

    response = client.request("DELETE", "/pending", json={"token": "anything"})
    assert response.status_code == 403
    assert response.json() == {"error": "This file cannot be deleted"}


def test_ids_outside_the_storage_alphabet_are_not_found(client):
    assert client.get("/bad~id").status_code == 404
    response = client.request("DELETE", "/bad~id", json={"token": "0" * 48})
    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}


def test_file_completed_out_of_order_fails_before_headers(client):
    response = post_chunk(client, "sp", "a.bin", make_payload(MiB), 2, 3, file_size=3 * MiB)
    assert response.json()["done"] is True

    response = client.get("/sp")
    assert response.status_code == 500
    assert response.json()["message"] == "Internal server error"
    assert "1 of 3" in response.json()["error"]


def test_access_log_includes_error_message(client, caplog):
    upload(client, "logged", "a.bin", b"payload")

    with caplog.at_level(logging.INFO, logger="telecloud.access"):
        client.request("DELETE", "/logged", json={"token": "0" * 48})
        client.get("/")

    lines = [r.getMessage() for r in caplog.records if r.name == "telecloud.access"]
    assert lines[0].startswith("DELETE ")
    assert lines[0].endswith("| 403 | /logged | Invalid delete token")
    assert lines[1].endswith("| 200 | /")
