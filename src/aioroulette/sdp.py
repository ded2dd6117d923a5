import re

from aiortc.sdp import parameters_to_sdp

OPUS_PARAMETERS = {
    "maxplaybackrate": 48000,
    "stereo": 1,
    "sprop-stereo": 1,
    "maxaveragebitrate": 510000,
    "useinbandfec": 1,
}

RTPMAP_OPUS_RE = re.compile(r"^a=rtpmap:(\d+) opus/", re.IGNORECASE)
FMTP_RE = re.compile(r"^a=fmtp:(\d+) ")


def opus_fmtp_line(payload_type: int) -> str:
    return f"a=fmtp:{payload_type} {parameters_to_sdp(OPUS_PARAMETERS)}"


def pin_audio_parameters(sdp: str) -> str:
    """
    Rewrite the Opus format parameters of the audio sections so that the
    remote end plays back at 48 kHz in stereo, with a high average bitrate
    and in-band forward error correction.

    An existing `a=fmtp` line for the Opus payload type is replaced, otherwise
    one is inserted after the matching `a=rtpmap` line. Applying the rewrite
    to an already rewritten description returns it unchanged.
    """
    eol = "\r\n" if "\r\n" in sdp else "\n"
    lines = sdp.split(eol)

    # split into sections, the first one being the session level
    sections: list[list[str]] = [[]]
    for line in lines:
        if line.startswith("m="):
            sections.append([])
        sections[-1].append(line)

    changed = False
    for section in sections[1:]:
        if section[0].startswith("m=audio "):
            changed = _pin_section(section) or changed
    if not changed:
        return sdp

    return eol.join(line for section in sections for line in section)


def _pin_section(section: list[str]) -> bool:
    rtpmaps: dict[int, int] = {}
    for i, line in enumerate(section):
        m = RTPMAP_OPUS_RE.match(line)
        if m:
            rtpmaps[int(m.group(1))] = i
    if not rtpmaps:
        return False

    # replace existing fmtp lines
    pinned: set[int] = set()
    for i, line in enumerate(section):
        m = FMTP_RE.match(line)
        if m and int(m.group(1)) in rtpmaps:
            payload_type = int(m.group(1))
            section[i] = opus_fmtp_line(payload_type)
            pinned.add(payload_type)

    # insert missing ones, from the bottom to keep indices valid
    for payload_type, index in sorted(
        rtpmaps.items(), key=lambda x: x[1], reverse=True
    ):
        if payload_type not in pinned:
            section.insert(index + 1, opus_fmtp_line(payload_type))
    return True
