#!/usr/bin/env python3
"""Local stand-in for Supabase auth/storage and the Gamma generation API."""

from __future__ import annotations

import argparse
import json
import threading
import uuid
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

USERS = {
    "admin-token": {
        "id": "11111111-1111-1111-1111-111111111111",
        "email": "admin@example.com",
        "app_metadata": {"role": "admin"},
        "user_metadata": {},
    },
    "user-token": {
        "id": "33333333-3333-3333-3333-333333333333",
        "email": "supplier@example.com",
        "app_metadata": {"role": "user"},
        "user_metadata": {},
    },
    "importer-token": {
        "id": "44444444-4444-4444-4444-444444444444",
        "email": "directory-import-1@example.com",
        "app_metadata": {},
        "user_metadata": {},
    },
}
FAKE_PPTX = b"PK\x03\x04mock-pptx"


class MockState:
    def __init__(self, polls_until_complete: int) -> None:
        self.polls_until_complete = polls_until_complete
        self.generations: dict[str, int] = {}
        self.objects: dict[str, bytes] = {}
        self.lock = threading.Lock()


class MockSupabaseHandler(BaseHTTPRequestHandler):
    server_version = "MockSupabase/1.0"
    state: MockState

    def do_GET(self) -> None:  # noqa: N802 - stdlib handler signature
        parts = urlsplit(self.path)
        path = parts.path

        if path == "/healthz":
            self._write_json(HTTPStatus.OK, {"status": "ok"})
        elif path == "/auth/v1/user":
            user = USERS.get(self._bearer())
            if user is None:
                self._write_json(HTTPStatus.UNAUTHORIZED, {"msg": "invalid token"})
                return
            self._write_json(HTTPStatus.OK, user)
        elif path == "/auth/v1/admin/users":
            query = parse_qs(parts.query)
            page = int(query.get("page", ["1"])[0])
            per_page = int(query.get("per_page", ["50"])[0])
            users = list(USERS.values())
            batch = users[(page - 1) * per_page : page * per_page]
            self._write_json(HTTPStatus.OK, {"users": batch, "total": len(users)})
        elif path.startswith("/v1.0/generations/"):
            self._generation_status(path.rsplit("/", 1)[-1])
        elif path.startswith("/exports/"):
            self._write_bytes(HTTPStatus.OK, FAKE_PPTX)
        else:
            self._write_json(HTTPStatus.NOT_FOUND, {"message": "not found"})

    def do_POST(self) -> None:  # noqa: N802 - stdlib handler signature
        path = urlsplit(self.path).path
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""

        if path == "/v1.0/generations":
            if not self.headers.get("X-API-KEY"):
                self._write_json(HTTPStatus.UNAUTHORIZED, {"message": "missing api key"})
                return
            generation_id = uuid.uuid4().hex
            with self.state.lock:
                self.state.generations[generation_id] = 0
            self._write_json(HTTPStatus.OK, {"generationId": generation_id, "status": "queued"})
        elif path.startswith("/storage/v1/object/sign/"):
            object_path = path.removeprefix("/storage/v1/object/sign/")
            self._write_json(HTTPStatus.OK, {"signedURL": f"/object/sign/{object_path}?token=local"})
        elif path.startswith("/storage/v1/object/"):
            with self.state.lock:
                self.state.objects[path.removeprefix("/storage/v1/object/")] = body
            self._write_json(HTTPStatus.OK, {"Key": path.removeprefix("/storage/v1/object/")})
        else:
            self._write_json(HTTPStatus.NOT_FOUND, {"message": "not found"})

    def log_message(self, _: str, *args: object) -> None:
        if args:
            print("mock-supabase:", *args)

    def _generation_status(self, generation_id: str) -> None:
        with self.state.lock:
            if generation_id not in self.state.generations:
                self._write_json(HTTPStatus.NOT_FOUND, {"message": "generation not found"})
                return
            self.state.generations[generation_id] += 1
            polls = self.state.generations[generation_id]

        if polls < self.state.polls_until_complete:
            self._write_json(HTTPStatus.OK, {"generationId": generation_id, "status": "processing"})
            return

        host = self.headers.get("Host", "127.0.0.1")
        self._write_json(
            HTTPStatus.OK,
            {
                "generationId": generation_id,
                "status": "completed",
                "gammaUrl": f"http://{host}/docs/{generation_id}",
                "exportUrl": f"http://{host}/exports/{generation_id}.pptx",
            },
        )

    def _bearer(self) -> str:
        authorization = self.headers.get("Authorization", "")
        if not authorization.lower().startswith("bearer "):
            return ""
        return authorization.split(" ", maxsplit=1)[1].strip()

    def _write_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        self._write_bytes(status, json.dumps(payload).encode("utf-8"), content_type="application/json")

    def _write_bytes(self, status: HTTPStatus, raw: bytes, *, content_type: str = "application/octet-stream") -> None:
        self.send_response(status.value)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)


def main() -> None:
    parser = argparse.ArgumentParser(description="Mock Supabase auth/storage and the Gamma generation API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=54321)
    parser.add_argument("--polls-until-complete", type=int, default=2)
    args = parser.parse_args()

    MockSupabaseHandler.state = MockState(polls_until_complete=max(1, args.polls_until_complete))
    server = ThreadingHTTPServer((args.host, args.port), MockSupabaseHandler)
    print(f"mock-supabase listening on http://{args.host}:{args.port}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
