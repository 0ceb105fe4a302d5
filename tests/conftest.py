import pytest

from connection import GameConnection
from helpers import codes
from memory_store import InMemoryStore


@pytest.fixture()
def server() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
async def host(server):
    connection = GameConnection.over_store(server.client(), code_factory=codes("AB23XZ"))
    try:
        yield connection
    finally:
        await connection.destroy()


@pytest.fixture()
async def guest(server):
    connection = GameConnection.over_store(server.client())
    try:
        yield connection
    finally:
        await connection.destroy()
