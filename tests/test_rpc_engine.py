"""Tests for PortRPC engine semantics on an in-memory channel.

These tests verify:
1. Timeout and retry timing, including late returns from abandoned attempts
2. Namespace multiplexing and the internal introspection namespace
3. Disposal lifecycle and callbacks
4. The lazily memoised remote function view
"""

import asyncio
import multiprocessing
import time

import pytest

from portrpc import (
    DEFAULT_NAMESPACE,
    INTERNAL_NAMESPACE,
    CustomPort,
    DuplicateNameError,
    InvalidKeyError,
    InvalidPortTypeError,
    NamespaceConflictError,
    PortRPC,
    RemoteCallError,
    RemoteTimeoutError,
)

from tests.port_helpers import dispose_all


def add(a, b):
    return a + b


@pytest.mark.asyncio
class TestTimeoutAndRetry:
    async def test_timeout_not_before_deadline(self, channel):
        """A timed-out call does not fail before its deadline."""
        PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2)
        # Nothing answers on this namespace, so the call can only time out.
        rpc2_other = PortRPC(channel.port2, {"namespace": "nobody"})

        start = time.monotonic()
        with pytest.raises(RemoteTimeoutError) as exc_info:
            await rpc2_other.call_remote_fn("add", [1, 2], {"timeout": 0.05})
        elapsed = time.monotonic() - start

        assert elapsed >= 0.045
        assert exc_info.value.function_name == "add"
        assert exc_info.value.timeout == 0.05
        assert rpc2.namespace == DEFAULT_NAMESPACE

    async def test_retry_runs_every_attempt(self, channel):
        """Retries give every attempt the full timeout."""
        PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2, {"namespace": "nobody"})

        start = time.monotonic()
        with pytest.raises(RemoteTimeoutError):
            await rpc2.call_remote_fn("add", [1, 2], {"timeout": 0.05, "retry": 3})
        elapsed = time.monotonic() - start

        assert 0.18 <= elapsed < 1.0

    async def test_retry_uses_fresh_keys(self, channel):
        """Every retry is sent under a new key."""
        sent = []
        rpc2 = PortRPC(channel.port2, {"namespace": "nobody"})
        channel.port1.start()
        channel.port1.add_listener(sent.append)

        with pytest.raises(RemoteTimeoutError):
            await rpc2.call_remote_fn("add", [1, 2], {"timeout": 0.03, "retry": 2})

        calls = [m for m in sent if m["type"] == "call" and m["ns"] == "nobody"]
        keys = [m["key"] for m in calls]
        assert len(keys) == 3
        assert keys == sorted(set(keys))

    async def test_retry_succeeds_and_late_return_is_ignored(self, channel):
        """A retry can succeed and the late first reply is dropped."""
        rpc1 = PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2)
        invocations = []

        async def slow_once(value):
            invocations.append(value)
            if len(invocations) == 1:
                await asyncio.sleep(0.15)
                return "late"
            return "fresh"

        rpc1.define_local_fn("slow_once", slow_once)

        result = await rpc2.call_remote_fn("slow_once", ["x"], {"timeout": 0.08, "retry": 1})
        assert result == "fresh"

        # Let the abandoned first attempt reply; it must not disturb anything.
        await asyncio.sleep(0.15)
        assert invocations == ["x", "x"]
        assert repr(rpc2).endswith("pending=0>")

    async def test_engine_level_timeout_and_retry(self, channel):
        """Engine options set the default timeout and retry."""
        PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2, {"namespace": "nobody", "timeout": 0.03, "retry": 1})

        start = time.monotonic()
        with pytest.raises(RemoteTimeoutError):
            await rpc2.call_remote_fn("add", [1, 2])

        assert time.monotonic() - start >= 0.055


@pytest.mark.asyncio
class TestNamespaces:
    async def test_multiplexed_namespaces(self, channel):
        """Namespaces on one port route calls independently."""
        math1 = PortRPC(channel.port1, {"namespace": "math"})
        text1 = PortRPC(channel.port1, {"namespace": "text"})
        math2 = PortRPC(channel.port2, {"namespace": "math"})
        text2 = PortRPC(channel.port2, {"namespace": "text"})
        math1.define_local_fn("join", add)
        text1.define_local_fn("join", lambda a, b: f"{a}-{b}")

        results = await asyncio.gather(
            math2.call_remote_fn("join", [1, 2]),
            text2.call_remote_fn("join", [1, 2]),
        )

        assert results == [3, "1-2"]

    async def test_default_namespace_conflict(self, channel):
        """Two default engines cannot share a port."""
        PortRPC(channel.port1)
        with pytest.raises(NamespaceConflictError, match=DEFAULT_NAMESPACE):
            PortRPC(channel.port1)

    async def test_internal_namespace_is_reserved(self, channel):
        """The introspection namespace is already taken once an engine exists."""
        PortRPC(channel.port1)
        with pytest.raises(NamespaceConflictError, match=INTERNAL_NAMESPACE):
            PortRPC(channel.port1, {"namespace": INTERNAL_NAMESPACE})

    async def test_internal_engine_created_once(self, channel):
        """The introspection engine is created once per port."""
        PortRPC(channel.port1, {"namespace": "a"})
        internal = PortRPC.get(channel.port1, INTERNAL_NAMESPACE)
        PortRPC(channel.port1, {"namespace": "b"})

        assert internal is not None
        assert PortRPC.get(channel.port1, INTERNAL_NAMESPACE) is internal
        assert internal.get_local_fn_names() == ["$names"]

    async def test_get_and_ensure(self, channel):
        """get() finds live engines and ensure() creates one when missing."""
        assert PortRPC.get(channel.port1) is None
        rpc = PortRPC.ensure(channel.port1)

        assert PortRPC.get(channel.port1) is rpc
        assert PortRPC.ensure(channel.port1) is rpc

    async def test_remote_fn_names_track_registration(self, channel):
        """Remote name lists follow definitions and disposal."""
        rpc1 = PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2)

        assert await rpc2.get_remote_fn_names() == []
        rpc1.define_local_fn("add", add)
        assert await rpc2.get_remote_fn_names() == ["add"]

        rpc1.dispose()
        assert await rpc2.get_remote_fn_names() is None

    async def test_invalid_port_type(self):
        """Constructing an engine on an unsupported object fails."""
        with pytest.raises(InvalidPortTypeError):
            PortRPC(object())


@pytest.mark.asyncio
class TestDispose:
    async def test_dispose_is_idempotent(self, channel):
        """Dispose callbacks run once however often dispose is called."""
        calls = []
        rpc = PortRPC(channel.port1, {"on_disposed": lambda: calls.append("option")})
        rpc.on_disposed(lambda: calls.append("registered"))

        rpc.dispose()
        rpc.dispose()

        assert rpc.disposed
        assert calls == ["option", "registered"]

    async def test_on_disposed_after_dispose_fires_immediately(self, channel):
        """Callbacks registered after disposal run right away."""
        calls = []
        rpc = PortRPC(channel.port1)
        rpc.dispose()

        rpc.on_disposed(lambda: calls.append(1))
        rpc.dispose()

        assert calls == [1]

    async def test_dispose_leaves_port_open(self, channel):
        """Disposing an engine does not close its port."""
        rpc = PortRPC(channel.port1)
        rpc.dispose()

        assert not channel.port1.closed
        assert PortRPC.get(channel.port1) is None

    async def test_disposed_engine_stops_answering(self, channel):
        """A disposed engine no longer answers calls."""
        rpc1 = PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2)
        rpc1.define_local_fn("add", add)
        rpc1.dispose()

        with pytest.raises(RemoteTimeoutError):
            await rpc2.call_remote_fn("add", [1, 2], {"timeout": 0.05})

    async def test_context_manager_disposes(self, channel):
        """Leaving the with block disposes the engine."""
        with PortRPC(channel.port1, {"namespace": "scoped"}) as rpc:
            assert not rpc.disposed

        assert rpc.disposed
        PortRPC(channel.port1, {"namespace": "scoped"})


@pytest.mark.asyncio
class TestLocalAndRemoteFunctions:
    async def test_local_fn_names_in_registration_order(self, channel):
        """Local names are listed in definition order."""
        rpc = PortRPC(channel.port1)
        rpc.define_local_fns({"b": add, "a": add, "c": add})

        assert rpc.get_local_fn_names() == ["b", "a", "c"]

    async def test_define_local_fns_stops_at_first_duplicate(self, channel):
        """Batch definition stops at the first duplicate name."""
        rpc = PortRPC(channel.port1)
        rpc.define_local_fn("a", add)

        with pytest.raises(DuplicateNameError):
            rpc.define_local_fns({"b": add, "a": add, "c": add})

        assert rpc.get_local_fn_names() == ["a", "b"]

    async def test_remote_functions_are_memoised(self, channel):
        """The grouped view returns the same callable per name."""
        rpc = PortRPC(channel.port2)
        fns = rpc.use_remote_fns()

        assert fns.add is fns.add
        assert fns["add"] is fns.add
        assert fns.add.__name__ == "add"

    async def test_remote_functions_reject_non_string_keys(self, channel):
        """Non-string keys and private attributes are rejected."""
        fns = PortRPC(channel.port2).use_remote_fns()

        with pytest.raises(InvalidKeyError):
            fns[1]
        with pytest.raises(AttributeError):
            fns._private

    async def test_remote_functions_per_name_options(self, channel):
        """Per-name options apply only to their function."""
        rpc1 = PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2)
        rpc1.define_local_fns({"add": add, "sleep": asyncio.sleep})
        fns = rpc2.use_remote_fns({"sleep": {"timeout": 0.05}})

        assert await fns.add(1, 1) == 2
        with pytest.raises(RemoteTimeoutError):
            await fns.sleep(0.2)

    async def test_local_invocations_overlap(self, channel):
        """Incoming calls run concurrently."""
        rpc1 = PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2)

        async def nap(value):
            await asyncio.sleep(0.1)
            return value

        rpc1.define_local_fn("nap", nap)

        start = time.monotonic()
        results = await asyncio.gather(*(rpc2.call_remote_fn("nap", [i]) for i in range(5)))

        assert results == [0, 1, 2, 3, 4]
        assert time.monotonic() - start < 0.4


@pytest.mark.asyncio
class TestMessageTolerance:
    async def test_non_rpc_messages_are_ignored(self, channel):
        """Stray messages on the port do not disturb RPC."""
        rpc1 = PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2)
        rpc1.define_local_fn("add", add)

        channel.port2.post_message("hello")
        channel.port2.post_message({"type": "noise"})
        channel.port2.post_message(None)

        assert await rpc2.call_remote_fn("add", [1, 2]) == 3

    async def test_return_for_unknown_key_is_ignored(self, channel):
        """Returns for unknown keys are dropped."""
        PortRPC(channel.port1)
        rpc2 = PortRPC(channel.port2)

        channel.port1.post_message(
            {"type": "ret", "ns": DEFAULT_NAMESPACE, "key": 999, "name": "add", "ok": True, "ret": 1}
        )
        await asyncio.sleep(0.01)

        assert not rpc2.disposed

    async def test_malformed_call_args_reply_with_failure(self, channel):
        """A call with malformed arguments gets a failed Return."""
        rpc1 = PortRPC(channel.port1)
        rpc1.define_local_fn("add", add)
        replies = []
        channel.port2.start()
        channel.port2.add_listener(replies.append)

        channel.port2.post_message(
            {"type": "call", "ns": DEFAULT_NAMESPACE, "key": 1, "name": "add", "args": None}
        )
        await asyncio.sleep(0.05)

        assert len(replies) == 1
        assert replies[0]["ok"] is False
        assert replies[0]["key"] == 1

    async def test_unencodable_result_becomes_failure(self, channel):
        """A result the port cannot encode becomes a remote error."""
        channel.port1.start()
        channel.port2.start()
        port1 = CustomPort(channel.port1.post_message, channel.port1.add_listener, channel.port1.remove_listener)
        port2 = CustomPort(channel.port2.post_message, channel.port2.add_listener, channel.port2.remove_listener)
        rpc1 = PortRPC(port1)
        rpc2 = PortRPC(port2)
        rpc1.define_local_fn("make", object)

        with pytest.raises(RemoteCallError, match="Response serialization failed"):
            await rpc2.call_remote_fn("make", [], {"timeout": 1.0})

    async def test_unencodable_args_fail_the_call(self, channel):
        """Arguments the port cannot encode fail the call at once."""
        channel.port1.start()
        port = CustomPort(channel.port1.post_message, channel.port1.add_listener, channel.port1.remove_listener)
        rpc = PortRPC(port)

        with pytest.raises(TypeError):
            await rpc.call_remote_fn("add", [object()])

        assert repr(rpc).endswith("pending=0>")

    async def test_unpicklable_result_over_pipe_becomes_failure(self):
        """A result the pipe cannot pickle is reported to the caller instead of timing out."""

        class LocalOnly:
            pass

        conn1, conn2 = multiprocessing.Pipe()
        rpc1, rpc2 = PortRPC(conn1), PortRPC(conn2)
        try:
            rpc1.define_local_fn("make", LocalOnly)

            with pytest.raises(RemoteCallError, match="Response serialization failed"):
                await rpc2.call_remote_fn("make", [], {"timeout": 1.0})
        finally:
            dispose_all(conn1)
            dispose_all(conn2)
            conn1.close()
            conn2.close()
