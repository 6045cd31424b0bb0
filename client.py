"""
HTTP client for the E-Waste Marketplace API.

Mirrors what the mobile app does: the session token and the signed-in user are
kept in a small local cache, every request carries the bearer token, and a call
only counts as successful when the response body says `"success": true`.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15


class ApiError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        self.status_code = int(status_code)
        self.message = message
        super().__init__(f"HTTP {self.status_code}: {message}")


class TokenCache:
    """JSON file holding the current token and user."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError:
                logger.warning("token_cache_corrupt path=%s", self.path)
                return {}
        return data if isinstance(data, dict) else {}

    @property
    def token(self) -> str | None:
        return self.load().get("token")

    @property
    def user(self) -> dict | None:
        return self.load().get("user")

    def save(self, token: str, user: dict | None) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"token": token, "user": user}, f)

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)


class ListingsApi:
    """Calls for one listing family (`ewaste` or `bulk-ewaste`)."""

    def __init__(self, client: "EWasteClient", kind: str, transition: str):
        self.client = client
        self.base = f"/{kind}"
        self.transition = transition

    def create(self, fields: dict[str, Any], images: list[tuple[str, bytes]] | None = None) -> dict:
        return self.client._send("POST", self.base, data=fields, images=images)["data"]

    def my_posts(self) -> list[dict]:
        return self.client._send("GET", f"{self.base}/my-posts")["data"]

    def all(self, **filters: str) -> list[dict]:
        params = {k: v for k, v in filters.items() if v}
        return self.client._send("GET", self.base, params=params)["data"]

    def get(self, listing_id: str) -> dict:
        return self.client._send("GET", f"{self.base}/{listing_id}")["data"]

    def update(self, listing_id: str, fields: dict[str, Any], images: list[tuple[str, bytes]] | None = None) -> dict:
        return self.client._send("PUT", f"{self.base}/{listing_id}", data=fields, images=images)["data"]

    def delete(self, listing_id: str) -> str:
        return self.client._send("DELETE", f"{self.base}/{listing_id}").get("message", "")

    def mark(self, listing_id: str) -> dict:
        return self.client._send("PUT", f"{self.base}/{listing_id}/{self.transition}")["data"]


class EWasteClient:
    def __init__(self, base_url: str, cache: TokenCache, *, session: requests.Session | None = None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.cache = cache
        self.timeout = timeout
        self.session = session or requests.Session()
        self.ewaste = ListingsApi(self, "ewaste", "collect")
        self.bulk = ListingsApi(self, "bulk-ewaste", "sold")

    def mark_collected(self, listing_id: str) -> dict:
        return self.ewaste.mark(listing_id)

    def mark_sold(self, listing_id: str) -> dict:
        return self.bulk.mark(listing_id)

    def _send(self, method: str, path: str, *, json_body: dict | None = None, data: dict | None = None,
              params: dict | None = None, images: list[tuple[str, bytes]] | None = None) -> dict:
        headers = {}
        token = self.cache.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        files = None
        if images:
            files = [("images", (name, content)) for name, content in images]
        form = None
        if data is not None:
            form = {k: "" if v is None else str(v) for k, v in data.items()}
        try:
            response = self.session.request(
                method=method,
                url=f"{self.base_url}{path}",
                headers=headers,
                json=json_body,
                data=form,
                files=files,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ApiError(0, f"Request failed: {exc}") from exc

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.status_code < 200 or response.status_code >= 300 or body.get("success") is not True:
            message = body.get("error") or body.get("message") or f"HTTP {response.status_code}"
            raise ApiError(response.status_code, str(message))
        return body

    # ---- session ----
    def login(self, email: str, password: str) -> dict:
        body = self._send("POST", "/auth/login", json_body={"email": email, "password": password})
        self.cache.save(body["token"], body.get("user"))
        return body["user"]

    def signup(self, **user_data: Any) -> dict:
        body = self._send("POST", "/auth/signup", json_body=user_data)
        self.cache.save(body["token"], body.get("user"))
        return body["user"]

    def me(self) -> dict:
        user = self._send("GET", "/auth/me")["data"]
        token = self.cache.token
        if token:
            self.cache.save(token, user)
        return user

    def logout(self) -> None:
        self.cache.clear()
