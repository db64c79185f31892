"""Shared fixtures: an in-process fake of the game server behind httpx.MockTransport."""

from typing import Callable, Union
from unittest.mock import AsyncMock
from urllib.parse import quote

import httpx
import pytest
import pytest_asyncio

from config import StateStore
from cookie_store import CookieStore
from game_http import GameHttpClient
from profile_data import Profile

Reply = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def page(body: str = "", status: int = 200, content_type: str = "text/html", cookies: list[str] = None) -> Reply:
    """Reply factory: a cp1251 body, optionally setting cookies."""

    def reply(request: httpx.Request) -> httpx.Response:
        headers = [("Content-Type", content_type)] if content_type else []
        headers += [("Set-Cookie", cookie) for cookie in cookies or []]
        return httpx.Response(status, headers=headers, content=body.encode("cp1251"))

    return reply


def identity_cookie(nick: str) -> str:
    return f"NeverNick={quote(nick, encoding='cp1251')}; Path=/"


class FakeGameServer:
    """
    Replies per (method, path). A route with several replies hands them out in order and repeats the last one.
    Every request is recorded.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[Reply]] = dict()
        self.requests: list[httpx.Request] = list()

    def route(self, method: str, path: str, *replies: Reply):
        self.routes[(method.upper(), path)] = list(replies)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self.routes.get((request.method, request.url.path))
        if not replies:
            return httpx.Response(404, content=b"not found")
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        return reply(request) if callable(reply) else reply


@pytest.fixture
def server() -> FakeGameServer:
    return FakeGameServer()


@pytest.fixture
def transport(server) -> httpx.MockTransport:
    return httpx.MockTransport(server)


@pytest.fixture
def store() -> StateStore:
    return StateStore()


@pytest.fixture
def cookie_store(store) -> CookieStore:
    return CookieStore(store)


@pytest.fixture
def profile() -> Profile:
    return Profile(user_nick="Герой", user_password="секрет")


@pytest.fixture
def repository():
    repository = AsyncMock()
    repository.save_profile = AsyncMock(return_value=None)
    return repository


@pytest_asyncio.fixture
async def http(cookie_store, transport, profile):
    client = GameHttpClient(cookie_store, lambda: profile, transport=transport)
    yield client
    await client.aclose()
