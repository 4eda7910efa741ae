"""Test encoding and decoding of payloads."""

import copy

import pytest
from pydantic import BaseModel

from worker_rpc import (
    EPHEMERAL_PREFIX,
    MARKER,
    HandlerNotFoundError,
    RemoteError,
    RemoteFunction,
    RemoteRecord,
    RemoteSequence,
    inline_function,
)
from . import create_rpc


def triple(x):
    return x * 3


class Point(BaseModel):
    x: int
    y: int


@pytest.mark.asyncio
async def test_plain_round_trip():
    rpc, _ = create_rpc()
    value = {"name": "job", "sizes": [1, 2.5, None, True], "nested": {"b": b"\x00"}}
    encoded = rpc.encode(value)
    assert encoded == value
    assert encoded is not value
    assert list(encoded) == ["name", "sizes", "nested"]

    view = rpc.decode(copy.deepcopy(encoded))
    assert isinstance(view, RemoteRecord)
    assert view == value
    assert isinstance(view["sizes"], RemoteSequence)
    assert view.sizes[1] == 2.5
    assert view["nested"]["b"] == b"\x00"
    assert view.unwrap() == encoded


@pytest.mark.asyncio
async def test_shared_structure_is_preserved():
    rpc, _ = create_rpc()
    shared = {"value": 1}
    encoded = rpc.encode({"a": shared, "b": shared, "c": [shared]})
    assert encoded["a"] is encoded["b"]
    assert encoded["c"][0] is encoded["a"]

    view = rpc.decode(copy.deepcopy(encoded))
    assert view["a"] is view["b"]
    assert view["c"][0] is view["a"]
    assert view["a"] is view["a"]


@pytest.mark.asyncio
async def test_cyclic_values():
    rpc, _ = create_rpc()
    node = {"name": "root", "children": []}
    node["self"] = node
    node["children"].append(node)

    encoded = rpc.encode(node)
    assert encoded["self"] is encoded
    assert encoded["children"][0] is encoded

    view = rpc.decode(copy.deepcopy(encoded))
    assert view["self"] is view
    assert view.children[0] is view
    assert view.self.self.name == "root"


@pytest.mark.asyncio
async def test_tuples_become_lists():
    rpc, _ = create_rpc()
    assert rpc.encode((1, (2, 3))) == [1, [2, 3]]


@pytest.mark.asyncio
async def test_callables_become_tokens():
    rpc, _ = create_rpc()

    def on_progress(value):
        return value

    encoded = rpc.encode({"hooks": {"progress": on_progress, "again": on_progress}})
    token = encoded["hooks"]["progress"]
    assert token[MARKER] is True
    assert token["kind"] == "ref"
    assert token["id"].startswith(EPHEMERAL_PREFIX)
    assert rpc._handlers[token["id"]] is on_progress
    # the same callable within one payload maps to a single handler
    assert encoded["hooks"]["again"] is token
    assert rpc.get_stats()["ephemeral_handlers"] == 1


@pytest.mark.asyncio
async def test_pinned_name_is_reused():
    rpc, _ = create_rpc()

    def on_done():
        pass

    token = rpc.pin(on_done, "on_done")
    assert token == {MARKER: True, "kind": "ref", "id": "on_done"}
    encoded = rpc.encode([on_done])
    assert encoded[0]["id"] == "on_done"
    assert rpc.get_stats()["ephemeral_handlers"] == 0

    # tagged values pass through untouched
    assert rpc.encode({"cb": token})["cb"] is token


@pytest.mark.asyncio
async def test_pin_without_name():
    rpc, _ = create_rpc()
    token = rpc.pin(print)
    assert token["id"].startswith(EPHEMERAL_PREFIX)
    assert rpc._handlers[token["id"]] is print

    with pytest.raises(TypeError):
        rpc.pin(42)


@pytest.mark.asyncio
async def test_expose_validation():
    rpc, _ = create_rpc()
    with pytest.raises(ValueError):
        rpc.expose({EPHEMERAL_PREFIX + "x": print})
    with pytest.raises(TypeError):
        rpc.expose({"ok": print, "bad": "not callable"})
    # nothing is registered when validation fails
    assert "ok" not in rpc._handlers


@pytest.mark.asyncio
async def test_transfer_items_are_not_copied():
    rpc, _ = create_rpc()
    frame = [0] * 8
    encoded = rpc.encode({"frame": frame, "meta": {"size": 8}}, transfer=[frame])
    assert encoded["frame"] is frame
    assert encoded["meta"] == {"size": 8}


@pytest.mark.asyncio
async def test_models_and_errors():
    rpc, _ = create_rpc()
    encoded = rpc.encode({"point": Point(x=1, y=2), "error": ValueError("bad value")})
    assert encoded["point"] == {"x": 1, "y": 2}
    assert encoded["error"]["kind"] == "error"
    assert encoded["error"]["type"] == "ValueError"

    view = rpc.decode(encoded)
    error = view["error"]
    assert isinstance(error, RemoteError)
    assert str(error) == "bad value"
    assert error.remote_type == "ValueError"
    assert view["error"] is error

    not_found = rpc.decode(rpc.encode(HandlerNotFoundError("Handler not found: x")))
    assert isinstance(not_found, HandlerNotFoundError)


@pytest.mark.asyncio
async def test_stubs_are_cached_per_token():
    rpc, _ = create_rpc()
    token = {MARKER: True, "kind": "ref", "id": "temp_fn_abc"}
    view = rpc.decode({"f": token, "g": dict(token), "items": [token]})
    stub = view.f
    assert isinstance(stub, RemoteFunction)
    assert stub.__name__ == "temp_fn_abc"
    assert view["g"] is stub
    assert view["items"][0] is stub

    stub.timeout = 3
    assert view["f"].timeout == 3

    # a bare token decodes to a stub
    assert isinstance(rpc.decode(token), RemoteFunction)


@pytest.mark.asyncio
async def test_views_can_be_encoded_again():
    rpc, _ = create_rpc()
    token = {MARKER: True, "kind": "ref", "id": "temp_fn_remote"}
    view = rpc.decode({"data": [1, 2], "callback": token})
    encoded = rpc.encode({"returned": view})
    assert encoded["returned"]["data"] == [1, 2]
    # sent back to the side that owns the handler
    assert encoded["returned"]["callback"] == {
        MARKER: True,
        "kind": "local",
        "id": "temp_fn_remote",
    }
    assert rpc.get_stats()["ephemeral_handlers"] == 0

    # a stub from another connection is forwarded through a new handler
    other, _ = create_rpc()
    forwarded = other.encode(view)["callback"]
    assert forwarded["kind"] == "ref"
    assert forwarded["id"].startswith(EPHEMERAL_PREFIX)
    assert isinstance(other._handlers[forwarded["id"]], RemoteFunction)
    await other.disconnect()


@pytest.mark.asyncio
async def test_local_token_resolves_own_handler():
    rpc, _ = create_rpc()

    def on_done():
        pass

    name = rpc.pin(on_done)["id"]
    view = rpc.decode({"cb": {MARKER: True, "kind": "local", "id": name}})
    assert view.cb is on_done

    missing = rpc.decode({"cb": {MARKER: True, "kind": "local", "id": "temp_fn_gone"}})
    with pytest.raises(HandlerNotFoundError):
        missing["cb"]


@pytest.mark.asyncio
async def test_inline_code_is_rejected_by_default():
    rpc, _ = create_rpc()
    view = rpc.decode({"fn": inline_function(triple)})
    with pytest.raises(PermissionError):
        view["fn"]


@pytest.mark.asyncio
async def test_inline_code_when_allowed():
    rpc, _ = create_rpc(allow_inline_code=True)
    view = rpc.decode({"fn": inline_function(triple)})
    assert view.fn(4) == 12
    assert view["fn"] is view.fn


def test_inline_function_requires_def():
    with pytest.raises(ValueError):
        inline_function(lambda x: x)
    with pytest.raises(ValueError):
        inline_function(print)


@pytest.mark.asyncio
async def test_record_view_behaves_like_a_mapping():
    rpc, _ = create_rpc()
    view = rpc.decode({"a": 1, "keys": 2})
    assert "a" in view
    assert len(view) == 2
    assert dict(view) == {"a": 1, "keys": 2}
    assert view["keys"] == 2
    assert view.get("missing", "default") == "default"
    with pytest.raises(AttributeError):
        view.missing

    seq = rpc.decode([1, 2, 3])
    assert seq[1:] == [2, 3]
    assert list(seq) == [1, 2, 3]
    assert seq == (1, 2, 3)
