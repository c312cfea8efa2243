import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Dict, Any, FrozenSet

from pymediainfo import MediaInfo

from .. import config
from ..exceptions import ProbeError
from ..models import MetadataField, PROBE_FIELDS


@dataclass
class ProbeResult:
    duration_seconds: Optional[float] = None
    resolution: Optional[Tuple[int, int]] = None
    frame_rate: Optional[float] = None

    def missing(self, wanted: FrozenSet[MetadataField]) -> FrozenSet[MetadataField]:
        have = {
            MetadataField.DURATION: self.duration_seconds is not None,
            MetadataField.RESOLUTION: self.resolution is not None,
            MetadataField.FRAME_RATE: self.frame_rate is not None,
        }
        return frozenset(f for f in wanted if f in have and not have[f])


class MediaProber:
    """
    Reads duration, resolution and frame rate from a video file.

    Strategies:
      - 'pymediainfo' (in-process, fast) for every requested field.
      - 'ffprobe' subprocess for whatever MediaInfo could not supply.
    Each field is independent: a missing resolution does not discard a good duration.
    """
    def __init__(self,
                 ffprobe_bin: str = config.FFPROBE_BIN,
                 timeout: float = config.PROBE_TIMEOUT_SECONDS):
        self.ffprobe_bin = ffprobe_bin
        self.timeout = timeout

    def probe(self, path: Path, fields: FrozenSet[MetadataField] = PROBE_FIELDS) -> ProbeResult:
        """
        Raises:
            ProbeError: only if no requested field could be obtained by any strategy.
        """
        wanted = frozenset(fields) & PROBE_FIELDS
        result = ProbeResult()
        if not wanted:
            return result

        errors = []
        try:
            self._merge(result, self._extract_mediainfo(path), wanted)
        except Exception as e:
            logging.debug(f"MediaInfo failed for {path}: {e}")
            errors.append(f"mediainfo: {e}")

        remaining = result.missing(wanted)
        if remaining:
            try:
                self._merge(result, self._extract_ffprobe(path), remaining)
            except ProbeError as e:
                logging.debug(f"ffprobe failed for {path}: {e}")
                errors.append(str(e))

        if len(result.missing(wanted)) == len(wanted):
            detail = "; ".join(errors) or "no usable streams"
            raise ProbeError(f"Could not probe {path}: {detail}")
        return result

    def _merge(self, result: ProbeResult, found: Dict[str, Any], wanted: FrozenSet[MetadataField]):
        if MetadataField.DURATION in wanted and result.duration_seconds is None:
            result.duration_seconds = found.get('duration')
        if MetadataField.RESOLUTION in wanted and result.resolution is None:
            result.resolution = found.get('resolution')
        if MetadataField.FRAME_RATE in wanted and result.frame_rate is None:
            result.frame_rate = found.get('frame_rate')

    # --- Internal Extraction Helpers ---

    def _extract_mediainfo(self, path: Path) -> Dict[str, Any]:
        """Parses video using pymediainfo."""
        mi = MediaInfo.parse(str(path))
        data: Dict[str, Any] = {'duration': None, 'resolution': None, 'frame_rate': None}

        for track in mi.tracks:
            if track.track_type == "General":
                if getattr(track, "duration", None):
                    # MediaInfo duration is in milliseconds
                    data['duration'] = float(track.duration) / 1000.0
            elif track.track_type == "Video" and data['resolution'] is None:
                width = _to_int(getattr(track, "width", None))
                height = _to_int(getattr(track, "height", None))
                if width and height:
                    data['resolution'] = (width, height)
                data['frame_rate'] = _to_float(getattr(track, "frame_rate", None))
                if data['duration'] is None and getattr(track, "duration", None):
                    data['duration'] = float(track.duration) / 1000.0
        return data

    def _extract_ffprobe(self, path: Path) -> Dict[str, Any]:
        """
        Wraps the 'ffprobe' command line utility.
        Must be installed and on the system PATH (or configured).
        """
        cmd = [
            self.ffprobe_bin, "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "format=duration:stream=width,height,r_frame_rate",
            "-of", "json",
            str(path),
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=False)
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timed out after {self.timeout}s") from e
        except OSError as e:
            raise ProbeError(f"ffprobe could not be started: {e}") from e

        if proc.returncode != 0:
            raise ProbeError(f"ffprobe exited with {proc.returncode}: {proc.stderr.strip()}")

        try:
            payload = json.loads(proc.stdout or "{}")
        except ValueError as e:
            raise ProbeError(f"ffprobe returned invalid JSON: {e}") from e

        data: Dict[str, Any] = {'duration': None, 'resolution': None, 'frame_rate': None}
        data['duration'] = _to_float(payload.get('format', {}).get('duration'))

        streams = payload.get('streams') or []
        if streams:
            stream = streams[0]
            width = _to_int(stream.get('width'))
            height = _to_int(stream.get('height'))
            if width and height:
                data['resolution'] = (width, height)
            data['frame_rate'] = parse_frame_rate(stream.get('r_frame_rate'))
        return data


def parse_frame_rate(value) -> Optional[float]:
    """ffprobe reports frame rate as a fraction like '30000/1001' or '24/1'."""
    if value is None:
        return None
    text = str(value).strip()
    if '/' in text:
        num, _, den = text.partition('/')
        try:
            numerator, denominator = float(num), float(den)
        except ValueError:
            return None
        if denominator > 0 and numerator > 0:
            return numerator / denominator
        return None
    return _to_float(text)


def _to_float(value) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result > 0 else None


def _to_int(value) -> Optional[int]:
    f = _to_float(value)
    return int(f) if f is not None else None
