"""
Tests for the telemetry session state machine.
"""
import errno
import socket
import threading

import pytest

from retro_vision.common import Mode, PositionReport
from retro_vision.config import TelemetryConfig
from retro_vision.controller import ControllerResponder
from retro_vision.protocol import make_codec
from retro_vision.session import (
    ExponentialBackoff,
    FixedBackoff,
    SessionError,
    SessionState,
    TelemetrySession,
    TickResult,
    make_backoff,
)
from retro_vision.state import ModeState, TelemetryCell


class FakeSocket:
    """
    Scripted UDP socket: each recvfrom pops the next reply or exception.
    ``send_errors`` maps a 1-based sendto call number to the error it raises.
    A reply given as ``(data, addr)`` comes from that sender instead of the peer.
    """

    def __init__(self, replies=(), send_errors=None):
        self.replies = list(replies)
        self.send_errors = dict(send_errors or {})
        self.sent = []
        self.sends = 0
        self.timeout = None
        self.closed = False

    def settimeout(self, value):
        self.timeout = value

    def sendto(self, data, addr):
        self.sends += 1
        if self.sends in self.send_errors:
            raise self.send_errors[self.sends]
        self.sent.append((data, addr))

    def recvfrom(self, bufsize):
        item = self.replies.pop(0) if self.replies else socket.timeout("timed out")
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, tuple):
            return item[0][:bufsize], item[1]
        return item[:bufsize], ("10.54.50.2", 5800)

    def close(self):
        self.closed = True


class FakeNetwork:
    """Hands out pre-built FakeSockets and records every sleep request."""

    def __init__(self, *sockets, resolve_failures=0):
        self.sockets = list(sockets)
        self.created = []
        self.delays = []
        self.resolve_failures = resolve_failures

    def socket_factory(self):
        sock = self.sockets.pop(0) if self.sockets else FakeSocket()
        self.created.append(sock)
        return sock

    def resolver(self, host):
        if self.resolve_failures:
            self.resolve_failures -= 1
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return "10.54.50.2"

    def sleep(self, seconds):
        self.delays.append(seconds)
        return False


@pytest.fixture
def config():
    return TelemetryConfig(reconnect_delay_s=1.0, tick_interval_s=0.5)


@pytest.fixture
def mode():
    return ModeState()


@pytest.fixture
def cell():
    return TelemetryCell()


def make_session(config, mode, cell, net, **kwargs):
    return TelemetrySession(
        config, mode, cell,
        socket_factory=net.socket_factory,
        resolver=net.resolver,
        sleep=net.sleep,
        **kwargs,
    )


def record(session, mode):
    states, modes = [], []
    session.add_listener(lambda old, new: states.append(new))
    mode.subscribe(lambda old, new: modes.append(new))
    return states, modes


class TestConnect:
    """Test suite for the CONNECTING state."""

    def test_connect_sets_idle(self, config, mode, cell):
        mode.set(Mode.TRACKING_A)
        net = FakeNetwork()
        session = make_session(config, mode, cell, net)

        assert session.connect() is True
        assert session.state is SessionState.ACTIVE
        assert mode.get() is Mode.IDLE
        assert session.peer_address == ("10.54.50.2", 5800)
        assert net.created[0].timeout == config.response_timeout_s

    def test_resilient_retry(self, config, mode, cell):
        net = FakeNetwork(resolve_failures=2)
        session = make_session(config, mode, cell, net)
        states, modes = record(session, mode)

        assert session.connect() is True
        assert net.delays == [1.0, 1.0]
        assert states == [SessionState.CONNECTING, SessionState.ACTIVE]
        assert modes == [Mode.DISABLED, Mode.IDLE]
        # Sockets from failed attempts are released
        assert all(s.closed for s in net.created[:2])
        assert not net.created[2].closed

    def test_strict_gives_up(self, mode, cell):
        net = FakeNetwork(resolve_failures=1)
        session = make_session(TelemetryConfig(strict=True), mode, cell, net)

        with pytest.raises(SessionError):
            session.connect()
        assert session.state is SessionState.CLOSED
        assert mode.get() is Mode.DISABLED
        assert not mode.halted
        assert isinstance(session.last_error, socket.gaierror)

    def test_halt_during_backoff(self, config, mode, cell):
        net = FakeNetwork(resolve_failures=5)

        def sleep(seconds):
            mode.halt()
            return True

        session = TelemetrySession(
            config, mode, cell,
            socket_factory=net.socket_factory, resolver=net.resolver, sleep=sleep,
        )
        assert session.connect() is False
        assert session.state is SessionState.CLOSED

    def test_no_connect_when_halted(self, config, mode, cell):
        mode.halt()
        net = FakeNetwork()
        session = make_session(config, mode, cell, net)
        assert session.connect() is False
        assert net.created == []


class TestTick:
    """Test suite for the ACTIVE request/response exchange."""

    def active(self, config, mode, cell, *replies):
        net = FakeNetwork(FakeSocket(replies))
        session = make_session(config, mode, cell, net)
        session.connect()
        return session, net.created[0]

    def test_sends_current_value(self, config, mode, cell):
        session, sock = self.active(config, mode, cell, b"1")
        cell.set(12.5)
        session.tick()
        assert sock.sent == [(b"12.5!", ("10.54.50.2", 5800))]

    def test_reply_sets_mode(self, config, mode, cell):
        session, _ = self.active(config, mode, cell, b"3", b"2xyz", b"1")
        assert session.tick() is TickResult.UPDATED
        assert mode.get() is Mode.TRACKING_A
        assert session.tick() is TickResult.UPDATED
        assert mode.get() is Mode.TRACKING_B
        session.tick()
        assert mode.get() is Mode.IDLE

    def test_timeout_keeps_mode_and_session(self, config, mode, cell):
        session, sock = self.active(config, mode, cell, b"2", socket.timeout("timed out"), b"3")
        session.tick()
        assert session.tick() is TickResult.TIMEOUT
        assert mode.get() is Mode.TRACKING_B
        assert session.state is SessionState.ACTIVE
        assert not sock.closed
        assert session.tick() is TickResult.UPDATED
        assert session.timeouts == 1

    def test_unknown_reply_ignored(self, config, mode, cell):
        session, _ = self.active(config, mode, cell, b"2", b"?", b"")
        session.tick()
        assert session.tick() is TickResult.IGNORED
        assert session.tick() is TickResult.IGNORED
        assert mode.get() is Mode.TRACKING_B

    def test_refused_is_transient(self, config, mode, cell):
        refused = ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
        session, _ = self.active(config, mode, cell, refused)
        assert session.tick() is TickResult.TRANSIENT
        assert session.state is SessionState.ACTIVE
        assert session.last_error is refused

    def test_hard_error_propagates(self, config, mode, cell):
        session, _ = self.active(config, mode, cell, OSError(errno.EBADF, "Bad file descriptor"))
        with pytest.raises(OSError):
            session.tick()

    def test_failed_send_is_transient(self, config, mode, cell):
        unreachable = OSError(errno.ENETUNREACH, "Network is unreachable")
        net = FakeNetwork(FakeSocket([b"3", b"3"], send_errors={2: unreachable}))
        session = make_session(config, mode, cell, net)
        session.connect()

        assert session.tick() is TickResult.UPDATED
        assert session.tick() is TickResult.TRANSIENT
        assert mode.get() is Mode.TRACKING_A
        assert session.state is SessionState.ACTIVE
        assert not net.created[0].closed
        assert session.send_failures == 1
        assert session.tick() is TickResult.UPDATED

    def test_repeated_failures_escalate(self, mode, cell):
        nobufs = OSError(errno.ENOBUFS, "No buffer space available")
        cfg = TelemetryConfig(max_send_failures=3)
        net = FakeNetwork(FakeSocket(send_errors={1: nobufs, 2: nobufs, 3: nobufs}))
        session = make_session(cfg, mode, cell, net)
        session.connect()

        assert session.tick() is TickResult.TRANSIENT
        assert session.tick() is TickResult.TRANSIENT
        with pytest.raises(OSError):
            session.tick()

    def test_success_clears_failure_streak(self, mode, cell):
        nobufs = OSError(errno.ENOBUFS, "No buffer space available")
        cfg = TelemetryConfig(max_send_failures=2)
        net = FakeNetwork(FakeSocket([b"1", b"1"], send_errors={1: nobufs, 3: nobufs}))
        session = make_session(cfg, mode, cell, net)
        session.connect()

        assert session.tick() is TickResult.TRANSIENT
        assert session.tick() is TickResult.UPDATED
        assert session.tick() is TickResult.TRANSIENT

    def test_reply_from_other_host_ignored(self, config, mode, cell):
        session, _ = self.active(config, mode, cell, (b"0", ("10.0.0.99", 5800)), b"2")
        assert session.tick() is TickResult.IGNORED
        assert not mode.halted
        assert mode.get() is Mode.IDLE
        assert session.tick() is TickResult.UPDATED
        assert mode.get() is Mode.TRACKING_B

    def test_tick_requires_active(self, config, mode, cell):
        session = make_session(config, mode, cell, FakeNetwork())
        with pytest.raises(RuntimeError):
            session.tick()

    def test_position_codec(self, config, mode, cell):
        net = FakeNetwork(FakeSocket([b"1"]))
        session = make_session(config, mode, cell, net, codec=make_codec("position"))
        session.connect()
        cell.set(PositionReport(1.0, 2.0, 3.0, 0.0, 0.0, 0.0))
        session.tick()
        assert net.created[0].sent[0][0] == b"1.0,2.0,3.0,0.0,0.0,0.0"


class TestRun:
    """Test suite for the full session loop."""

    def test_reconnects_after_hard_error(self, config, mode, cell):
        first = FakeSocket([b"3", OSError(errno.EBADF, "Bad file descriptor")])
        second = FakeSocket([b"0"])
        net = FakeNetwork(first, second)
        session = make_session(config, mode, cell, net)
        states, modes = record(session, mode)

        session.run()

        assert states == [
            SessionState.CONNECTING,
            SessionState.ACTIVE,
            SessionState.RECONNECTING,
            SessionState.CONNECTING,
            SessionState.ACTIVE,
            SessionState.CLOSED,
        ]
        assert modes[:3] == [Mode.TRACKING_A, Mode.DISABLED, Mode.IDLE]
        assert first.closed and second.closed
        assert session.reconnects == 1
        assert mode.halted
        # tick interval, then reconnect backoff
        assert net.delays == [0.5, 1.0]

    def test_send_failure_keeps_commanded_mode(self, config, mode, cell):
        unreachable = OSError(errno.ENETUNREACH, "Network is unreachable")
        net = FakeNetwork(FakeSocket([b"3", b"3", b"0"], send_errors={2: unreachable}))
        session = make_session(config, mode, cell, net)
        states, modes = record(session, mode)

        session.run()

        assert modes == [Mode.TRACKING_A, Mode.DISABLED]
        assert SessionState.RECONNECTING not in states
        assert session.reconnects == 0
        assert session.send_failures == 1
        assert mode.halted

    def test_timeouts_never_end_session(self, config, mode, cell):
        replies = [socket.timeout("timed out")] * 5 + [b"0"]
        net = FakeNetwork(FakeSocket(replies))
        session = make_session(config, mode, cell, net)

        session.run()

        assert session.timeouts == 5
        assert session.reconnects == 0
        assert session.ticks == 6
        assert session.state is SessionState.CLOSED

    def test_local_halt_stops_loop(self, config, mode, cell):
        net = FakeNetwork(FakeSocket([b"2"] * 100))
        ticks = []

        def sleep(seconds):
            ticks.append(seconds)
            if len(ticks) == 3:
                mode.halt()
                return True
            return False

        session = TelemetrySession(
            config, mode, cell,
            socket_factory=net.socket_factory, resolver=net.resolver, sleep=sleep,
        )
        session.run()
        assert session.ticks == 3
        assert net.created[0].closed

    def test_backoff_resets_after_connect(self, mode, cell):
        cfg = TelemetryConfig(
            reconnect_delay_s=1.0, max_reconnect_delay_s=8.0, exponential_backoff=True,
        )
        first = FakeSocket([OSError(errno.EBADF, "Bad file descriptor")])
        second = FakeSocket([b"0"])
        net = FakeNetwork(FakeSocket(), FakeSocket(), first, second, resolve_failures=2)
        session = make_session(cfg, mode, cell, net)

        session.run()
        # Two failed resolves (1, 2), then a fresh backoff for the reconnect (1)
        assert net.delays == [1.0, 2.0, 1.0]


class TestBackoff:
    def test_fixed(self):
        b = FixedBackoff(0.25)
        assert [b.next_delay() for _ in range(3)] == [0.25, 0.25, 0.25]

    def test_exponential(self):
        b = ExponentialBackoff(1.0, 8.0)
        assert [b.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 8.0, 8.0]
        b.reset()
        assert b.next_delay() == 1.0

    def test_make_backoff(self):
        assert isinstance(make_backoff(TelemetryConfig()), FixedBackoff)
        assert isinstance(make_backoff(TelemetryConfig(exponential_backoff=True)), ExponentialBackoff)


class TestLoopback:
    """Real UDP exchange against the controller responder on localhost."""

    @pytest.fixture
    def responder(self):
        peer = ControllerResponder("127.0.0.1", 0, poll_timeout_s=2.0, mode=Mode.TRACKING_B)
        yield peer
        peer.close()

    def test_exchange(self, responder, mode, cell):
        cfg = TelemetryConfig(peer_host="127.0.0.1", peer_port=responder.address[1],
                              response_timeout_s=2.0)
        session = TelemetrySession(cfg, mode, cell)
        assert session.connect()
        cell.set(-4.5)

        server = threading.Thread(target=responder.serve_once)
        server.start()
        try:
            result = session.tick()
        finally:
            server.join(5.0)
            session.close()

        assert result is TickResult.UPDATED
        assert mode.get() is Mode.TRACKING_B
        assert responder.latest_value() == -4.5
        assert responder.requests == 1

    def test_silent_peer_times_out(self, mode, cell):
        silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        silent.bind(("127.0.0.1", 0))
        try:
            cfg = TelemetryConfig(peer_host="127.0.0.1", peer_port=silent.getsockname()[1],
                                  response_timeout_s=0.05)
            session = TelemetrySession(cfg, mode, cell)
            session.connect()
            mode.command(Mode.TRACKING_A)
            assert session.tick() is TickResult.TIMEOUT
            assert mode.get() is Mode.TRACKING_A
            assert session.state is SessionState.ACTIVE
            session.close()
        finally:
            silent.close()
