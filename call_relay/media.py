"""
Remote audio stream metadata for browsers.

Only handles, ids and SDP text are forwarded. Audio never passes through the
relay.
"""
from typing import Any, Dict, List, Optional

from .platform import PlatformEvent, PlatformEventKind, read_field


def _tracks(stream: Any) -> List[Dict[str, Any]]:
    get_tracks = getattr(stream, "get_tracks", None) or read_field(stream, "tracks")
    if callable(get_tracks):
        tracks = get_tracks()
    else:
        tracks = get_tracks or []
    return [
        {
            "kind": read_field(t, "kind"),
            "id": read_field(t, "id"),
            "enabled": read_field(t, "enabled"),
        }
        for t in tracks
    ]


def describe_stream(stream: Any, stream_type: str = "remote") -> Dict[str, Any]:
    return {
        "id": read_field(stream, "id"),
        "active": read_field(stream, "active"),
        "type": stream_type,
        "tracks": _tracks(stream),
    }


def describe_remote_stream(capability: Any, answer_result: Any = None) -> Optional[Dict[str, Any]]:
    """
    Metadata for the remote party's stream right after answering.

    Looks on the call itself, then on the answer result, then falls back to
    the remote SDP. None when the platform exposes nothing yet.
    """
    stream = read_field(capability, "remote_stream", "remoteStream")
    if stream is not None:
        return describe_stream(stream)

    stream = read_field(answer_result, "remote_stream", "remoteStream")
    if stream is not None:
        return describe_stream(stream)

    media = read_field(capability, "media")
    sdp = read_field(media, "remote_sdp", "remoteSdp")
    if sdp:
        return {"type": "sdp", "sdp": sdp}

    return None


def media_change(event: PlatformEvent) -> Optional[Dict[str, Any]]:
    """
    Translate a media push event into a `mediaChanges` payload.
    Returns None for events browsers have no use for (non-audio tracks, empty SDP).
    """
    payload = event.payload
    message: Dict[str, Any] = {"callId": event.call_id}

    if event.kind == PlatformEventKind.MEDIA_STREAMING:
        message["eventType"] = "media.streaming"
        remote = read_field(payload, "remote_stream", "remoteStream")
        if remote is not None:
            message["remoteStream"] = describe_stream(remote)
        else:
            stream = read_field(payload, "stream")
            if stream is not None:
                message["remoteStream"] = describe_stream(stream, stream_type="stream")
        return message

    if event.kind == PlatformEventKind.TRACK:
        track = read_field(payload, "track")
        if read_field(track, "kind") != "audio":
            return None
        message["eventType"] = "track"
        message["remoteStream"] = {
            "id": read_field(track, "id"),
            "kind": "audio",
            "type": "track",
        }
        return message

    if event.kind == PlatformEventKind.MEDIA_SDP:
        sdp = read_field(payload, "remote_sdp", "remoteSdp")
        if not sdp:
            return None
        message["eventType"] = "sdp"
        message["remoteStream"] = {"type": "sdp", "sdp": sdp}
        return message

    return None
