import pytest
from aiortc import RTCSessionDescription

from client.media import LocalMedia
from client.peer_connection import (
    DEFAULT_ICE_SERVERS,
    PeerConnectionManager,
    PeerConnectionRegistry,
    ice_server_config,
)
from shared.errors import InvalidState, MalformedMessage
from shared.protocol import CallStatus, SignalAction

CANDIDATE = "candidate:1 1 udp 2130706431 192.168.1.2 50000 typ host"


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeSender:
    def __init__(self, track: FakeTrack) -> None:
        self.track = track
        self.replaced: list = []

    def replaceTrack(self, track) -> None:
        self.replaced.append(track)
        self.track = track


class FakeChannel:
    def __init__(self, label: str, ordered: bool) -> None:
        self.label = label
        self.ordered = ordered
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakePeerConnection:
    """Records what the manager does with an aiortc peer connection."""

    def __init__(self, configuration=None) -> None:
        self.configuration = configuration
        self.handlers: dict = {}
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.channels: list[FakeChannel] = []
        self.senders: list[FakeSender] = []
        self.candidates: list = []
        self.remote_sets = 0
        self.closed = False

    def on(self, event: str):
        def decorator(handler):
            self.handlers[event] = handler
            return handler

        return decorator

    def createDataChannel(self, label: str, ordered: bool = True) -> FakeChannel:
        channel = FakeChannel(label, ordered)
        self.channels.append(channel)
        return channel

    def addTrack(self, track: FakeTrack) -> FakeSender:
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    async def createOffer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=f"offer-{len(self.senders)}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp="answer", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        self.remoteDescription = description
        self.remote_sets += 1
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True

    async def change_state(self, state: str) -> None:
        self.connectionState = state
        await self.handlers["connectionstatechange"]()


class Harness:
    def __init__(self, *, is_offerer: bool, media: LocalMedia | None = None) -> None:
        self.sent: list[tuple[SignalAction, dict]] = []
        self.statuses: list[CallStatus] = []
        self.fatal: list[str] = []
        self.channels: list = []
        self.pcs: list[FakePeerConnection] = []
        self.manager = PeerConnectionManager(
            "s1",
            is_offerer=is_offerer,
            send_signal=self.send,
            media=media,
            pc_factory=self.factory,
            configuration=object(),
            on_status=self.statuses.append,
            on_fatal=self.fatal.append,
            on_data_channel=self.channels.append,
        )

    def factory(self, configuration) -> FakePeerConnection:
        pc = FakePeerConnection(configuration)
        self.pcs.append(pc)
        return pc

    async def send(self, action: SignalAction, data: dict) -> None:
        self.sent.append((action, data))

    @property
    def pc(self) -> FakePeerConnection:
        return self.pcs[-1]

    def actions(self) -> list[SignalAction]:
        return [action for action, _ in self.sent]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def av_media() -> LocalMedia:
    return LocalMedia(video=FakeTrack("video"), audio=FakeTrack("audio"))


@pytest.mark.anyio
async def test_offerer_opens_ordered_chat_channel_and_sends_offer() -> None:
    harness = Harness(is_offerer=True, media=av_media())

    await harness.manager.start()
    await harness.manager.start()

    assert len(harness.pcs) == 1
    assert [(channel.label, channel.ordered) for channel in harness.pc.channels] == [("chat", True)]
    assert harness.channels == harness.pc.channels
    assert harness.actions() == [SignalAction.OFFER]
    assert harness.sent[0][1]["type"] == "offer"
    assert {sender.track.kind for sender in harness.pc.senders} == {"audio", "video"}
    assert harness.statuses == [CallStatus.CONNECTING]


@pytest.mark.anyio
async def test_answerer_replies_once_and_ignores_repeated_offer() -> None:
    harness = Harness(is_offerer=False)
    offer = {"sdp": "remote-offer", "type": "offer"}

    await harness.manager.handle_signal(SignalAction.OFFER, offer, message_id="o1")
    await harness.manager.handle_signal(SignalAction.OFFER, offer, message_id="o1")
    await harness.manager.handle_signal(SignalAction.OFFER, offer, message_id="o2")

    assert harness.actions() == [SignalAction.ANSWER]
    assert harness.pc.remote_sets == 1
    assert harness.pc.channels == []


@pytest.mark.anyio
async def test_answer_outside_local_offer_is_ignored() -> None:
    harness = Harness(is_offerer=True)
    await harness.manager.start()
    answer = {"sdp": "remote-answer", "type": "answer"}

    await harness.manager.handle_signal(SignalAction.ANSWER, answer, message_id="a1")
    await harness.manager.handle_signal(SignalAction.ANSWER, answer, message_id="a2")

    assert harness.pc.remote_sets == 1
    assert harness.pc.signalingState == "stable"


@pytest.mark.anyio
async def test_candidates_wait_for_remote_description() -> None:
    harness = Harness(is_offerer=True)
    await harness.manager.start()

    await harness.manager.handle_signal(
        SignalAction.ICE_CANDIDATE,
        {"candidate": CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0},
        message_id="c1",
    )
    await harness.manager.handle_signal(SignalAction.ICE_CANDIDATE, {"candidate": ""}, message_id="c2")
    assert harness.pc.candidates == []

    await harness.manager.handle_signal(SignalAction.ANSWER, {"sdp": "remote-answer"}, message_id="a1")

    assert len(harness.pc.candidates) == 1
    candidate = harness.pc.candidates[0]
    assert candidate.ip == "192.168.1.2"
    assert candidate.port == 50000
    assert candidate.sdpMid == "0"


@pytest.mark.anyio
async def test_malformed_answer_and_candidate_are_rejected() -> None:
    harness = Harness(is_offerer=True)
    await harness.manager.start()

    with pytest.raises(MalformedMessage):
        await harness.manager.handle_signal(SignalAction.ANSWER, {"type": "answer"}, message_id="a1")
    with pytest.raises(MalformedMessage):
        await harness.manager.handle_signal(
            SignalAction.ICE_CANDIDATE, {"candidate": "candidate:garbage"}, message_id="c1"
        )
    with pytest.raises(MalformedMessage):
        await harness.manager.handle_signal(SignalAction.ICE_CANDIDATE, {"candidate": 42}, message_id="c2")

    assert harness.pc.remote_sets == 0
    assert harness.pc.signalingState == "have-local-offer"
    assert harness.pc.candidates == []

    await harness.manager.handle_signal(SignalAction.ANSWER, {"sdp": "remote-answer"}, message_id="a2")
    assert harness.pc.remote_sets == 1


@pytest.mark.anyio
async def test_toggling_video_replaces_track_and_announces_state() -> None:
    media = av_media()
    harness = Harness(is_offerer=True, media=media)
    await harness.manager.start()
    video_sender = next(sender for sender in harness.pc.senders if sender.track.kind == "video")

    await harness.manager.set_video_enabled(False)
    await harness.manager.set_video_enabled(True)

    assert video_sender.replaced == [None, media.video]
    assert harness.sent[-1] == (SignalAction.MEDIA_STATE, {"video": True, "audio": True})
    assert harness.sent[-2] == (SignalAction.MEDIA_STATE, {"video": False, "audio": True})


@pytest.mark.anyio
async def test_toggling_missing_track_is_rejected() -> None:
    harness = Harness(is_offerer=True)
    await harness.manager.start()

    with pytest.raises(InvalidState):
        await harness.manager.set_audio_enabled(False)


@pytest.mark.anyio
async def test_failed_connection_is_fatal() -> None:
    harness = Harness(is_offerer=True)
    await harness.manager.start()

    await harness.pc.change_state("connected")
    await harness.pc.change_state("failed")

    assert harness.statuses == [CallStatus.CONNECTING, CallStatus.CONNECTED, CallStatus.ERROR]
    assert harness.fatal == ["peer connection failed"]


@pytest.mark.anyio
async def test_close_releases_everything_once() -> None:
    media = av_media()
    harness = Harness(is_offerer=True, media=media)
    await harness.manager.start()
    pc = harness.pc

    await harness.manager.close()
    await harness.manager.close()

    assert pc.closed is True
    assert pc.channels[0].closed is True
    assert media.video.stopped and media.audio.stopped
    assert harness.statuses[-1] == CallStatus.ENDED
    assert harness.statuses.count(CallStatus.ENDED) == 1
    with pytest.raises(InvalidState):
        await harness.manager.start()
    with pytest.raises(InvalidState):
        await harness.manager.renegotiate()


@pytest.mark.anyio
async def test_renegotiate_requires_stable_signaling() -> None:
    harness = Harness(is_offerer=True)
    await harness.manager.start()

    with pytest.raises(InvalidState):
        await harness.manager.renegotiate()

    await harness.manager.handle_signal(SignalAction.ANSWER, {"sdp": "remote-answer"}, message_id="a1")
    await harness.manager.renegotiate()
    assert harness.actions() == [SignalAction.OFFER, SignalAction.OFFER]


@pytest.mark.anyio
async def test_registry_allows_one_live_manager_per_session() -> None:
    registry = PeerConnectionRegistry()
    first = Harness(is_offerer=True).manager
    registry.register(first)

    with pytest.raises(InvalidState):
        registry.register(Harness(is_offerer=True).manager)

    await registry.release("s1")
    assert first.closed is True
    replacement = Harness(is_offerer=False).manager
    assert registry.register(replacement) is replacement


def test_ice_server_config_from_environment() -> None:
    assert ice_server_config({}) == DEFAULT_ICE_SERVERS

    custom = ice_server_config(
        {
            "LIVE_ICE_SERVERS": '[{"urls": "stun:stun.example.org:3478"}]',
            "LIVE_TURN_SERVERS": '[{"urls": "turn:turn.example.org", "username": "u", "credential": "p"}, {}]',
        }
    )
    assert custom == [
        {"urls": "stun:stun.example.org:3478"},
        {"urls": "turn:turn.example.org", "username": "u", "credential": "p"},
    ]

    assert ice_server_config({"LIVE_ICE_SERVERS": "not json"}) == DEFAULT_ICE_SERVERS
