"""Stream-copy concatenation of recorded segments with PyAV."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Sequence

import av

logger = logging.getLogger(__name__)

_EPSILON_S = 1e-3


class RemuxError(RuntimeError):
    """Raised when the segments cannot be combined into one clip."""


def _video_stream(container):
    for stream in container.streams:
        if getattr(stream, "type", "") == "video":
            return stream
    return None


def _add_output_stream(output, template):
    add_from_template = getattr(output, "add_stream_from_template", None)
    if add_from_template is not None:
        return add_from_template(template)
    return output.add_stream(template=template)


def remux_segments(
    sources: Sequence[str | Path],
    start_offset_s: float,
    duration_s: float,
    output: str | Path,
) -> Path:
    """Copy ``duration_s`` seconds of ``sources`` into ``output``, skipping ``start_offset_s``.

    Packets are copied without decoding. The first packet written must be a
    keyframe, so ``start_offset_s`` is expected to sit on a keyframe boundary.
    Selection is by presentation time, so reordered (B-frame) streams keep
    every frame presented inside the window.
    Timestamps are rebased so the clip starts at zero. The file is written
    next to ``output`` and renamed into place only when complete.
    """

    if not sources:
        raise RemuxError("No segments to extract from")
    if duration_s <= 0:
        raise RemuxError("Clip duration must be positive")
    target = Path(output)
    partial_path = target.with_name(f"{target.stem}.partial{target.suffix or '.mp4'}")
    written = 0
    try:
        with av.open(str(partial_path), mode="w", format="mp4") as container_out:
            out_stream = None
            timeline_s = 0.0
            finished = False
            for index, source in enumerate(sources):
                with av.open(str(source), mode="r") as container_in:
                    video = _video_stream(container_in)
                    if video is None:
                        raise RemuxError(f"Segment {source} does not contain a video stream")
                    if out_stream is None:
                        out_stream = _add_output_stream(container_out, video)
                    time_base = video.time_base
                    first_s: float | None = None
                    last_end_s = 0.0
                    for packet in container_in.demux(video):
                        if packet.pts is None:
                            continue
                        packet_s = float(packet.pts * time_base)
                        if first_s is None:
                            first_s = packet_s
                        relative_s = packet_s - first_s
                        packet_len_s = float(packet.duration * time_base) if packet.duration else 0.0
                        last_end_s = max(last_end_s, relative_s + packet_len_s)
                        clip_s = timeline_s + relative_s - start_offset_s
                        # Packets arrive in decode order; dts <= pts, so once
                        # dts passes the end no later packet can be inside.
                        decode_s = clip_s
                        if packet.dts is not None:
                            decode_s = timeline_s + float(packet.dts * time_base) - first_s - start_offset_s
                        if decode_s >= duration_s - _EPSILON_S:
                            finished = True
                            break
                        if clip_s < -_EPSILON_S or clip_s >= duration_s - _EPSILON_S:
                            continue
                        if written == 0 and not packet.is_keyframe:
                            continue
                        shift = round((timeline_s - first_s - start_offset_s) / time_base)
                        packet.pts += shift
                        if packet.dts is not None:
                            packet.dts += shift
                        packet.stream = out_stream
                        container_out.mux(packet)
                        written += 1
                    timeline_s += last_end_s
                if finished:
                    break
        if written == 0:
            raise RemuxError("No packets fell inside the requested clip window")
        os.replace(partial_path, target)
    except RemuxError:
        partial_path.unlink(missing_ok=True)
        raise
    except (av.error.FFmpegError, OSError, ValueError) as exc:
        partial_path.unlink(missing_ok=True)
        raise RemuxError(f"Failed to extract clip: {exc}") from exc
    logger.debug("Remuxed %d packets from %d segment(s) into %s", written, len(sources), target)
    return target


__all__ = ["RemuxError", "remux_segments"]
