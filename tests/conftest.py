import pytest
from aiortc import RTCSessionDescription

from common.config import RelayConfig
from relay.server import RelayServer

ANSWER_SDP = "v=0\r\no=- answer\r\n"


class FakeEmitter:
    """The slice of pyee's EventEmitter that aiortc objects expose."""

    def __init__(self):
        self._handlers = {}

    def on(self, event):
        def decorator(fn):
            self._handlers.setdefault(event, []).append(fn)
            return fn
        return decorator

    def emit(self, event, *args):
        for fn in list(self._handlers.get(event, [])):
            fn(*args)

    def remove_all_listeners(self):
        self._handlers.clear()

    def listener_count(self, event):
        return len(self._handlers.get(event, []))


class FakeDataChannel(FakeEmitter):
    def __init__(self, label="tunnel", ready_state="connecting"):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.sent = []
        self.closed = False

    def send(self, data):
        self.sent.append(data)

    def close(self):
        self.closed = True
        self.readyState = "closed"


class FakePeerConnection(FakeEmitter):
    """Stands in for RTCPeerConnection; records what the manager does to it."""

    def __init__(self, ice_servers, fail_on=None, gates=None, answer_sdp=ANSWER_SDP):
        super().__init__()
        self.ice_servers = ice_servers
        self.fail_on = fail_on
        # method name -> asyncio.Event the call waits on before completing
        self.gates = dict(gates or {})
        self.answer_sdp = answer_sdp
        self.remoteDescription = None
        self.localDescription = None
        self.connectionState = "new"
        self.candidates = []
        self.closed = False

    async def _pass_gate(self, method):
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()

    async def setRemoteDescription(self, description):
        await self._pass_gate("setRemoteDescription")
        if self.fail_on == "setRemoteDescription":
            raise ValueError("Invalid SDP")
        self.remoteDescription = description

    async def createAnswer(self):
        return RTCSessionDescription(sdp=self.answer_sdp, type="answer")

    async def setLocalDescription(self, description):
        await self._pass_gate("setLocalDescription")
        self.localDescription = description

    async def addIceCandidate(self, candidate):
        if self.fail_on == "addIceCandidate":
            raise ValueError("ICE agent rejected candidate")
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class FakePeerConnectionFactory:
    def __init__(self):
        self.created = []
        self.fail_on = None
        self.gates = {}
        self.answer_sdp = ANSWER_SDP
        # Live peer connections observed each time a new one was requested
        self.live_at_creation = []

    def __call__(self, ice_servers):
        self.live_at_creation.append(sum(1 for pc in self.created if not pc.closed))
        pc = FakePeerConnection(ice_servers, fail_on=self.fail_on, gates=self.gates, answer_sdp=self.answer_sdp)
        self.created.append(pc)
        return pc


class Outbox:
    """Records envelopes the SessionManager sends toward the relay."""

    def __init__(self):
        self.envelopes = []
        self.error = None

    async def __call__(self, envelope):
        if self.error is not None:
            raise self.error
        self.envelopes.append(envelope)

    def of_type(self, msg_type):
        return [e for e in self.envelopes if e.type.value == msg_type]


@pytest.fixture
def fake_factory():
    return FakePeerConnectionFactory()


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def make_channel():
    return FakeDataChannel


@pytest.fixture
async def relay():
    server = RelayServer(RelayConfig(host="127.0.0.1", port=0))
    await server.listen()
    yield server
    await server.stop()


@pytest.fixture
def relay_url(relay):
    return f"ws://127.0.0.1:{relay.port}/ws"
