#!/usr/bin/env python3

import argparse
import logging
import math
import os
import shlex
import shutil
import subprocess
import sys
from typing import List, Optional, Sequence, TypedDict

DEFAULT_TARGET_MB = 15.5
DEFAULT_AUDIO_KBPS = 96.0
OUTPUT_SUFFIX = "-16mb.mp4"
PASSLOG_PREFIX = "ffmpeg2pass-16mb"
PASSLOG_SUFFIXES = ("-0.log", "-0.log.mbtree")
REQUIRED_TOOLS = ("ffmpeg", "ffprobe")

# MiB of output expressed in ffmpeg's SI kilobits: 1024 * 1024 * 8 / 1000
KBITS_PER_MIB = 8388.608
MIN_VIDEO_KBPS = 200.0
SIZE_WINDOW_MB = (15.0, 16.0)

SCALE_HEIGHT = 720
VIDEO_CODEC = "libx264"
VIDEO_PRESET = "medium"
AUDIO_CODEC = "aac"
AUDIO_CHANNELS = 2
AUDIO_SAMPLE_RATE = 48000
PIXEL_FORMAT = "yuv420p"

FFMPEG_GLOBAL_FLAGS = ["-y", "-hide_banner", "-loglevel", "error"]

VERBOSE_LEVEL = 0

_EPILOG = """\
Encodes INPUT to a 720p H.264/AAC MP4 aiming between 15-16 MB
(default target 15.5 MB) with two-pass rate control. The result is
reported as above, within or below the window; nothing is re-encoded
automatically.

Paths that begin with a dash must be attached to their flag, e.g.
--input=-clip.mov or --output=-small.mp4.
"""


class EncodeJob(TypedDict):
    input_path: str
    output_path: str
    target_mb: float
    audio_kbps: float
    keep_logs: bool
    passlog: str
    verbose: int


class BitratePlan(TypedDict):
    total_kbps: float
    video_kbps: float
    buffer_kbps: int


class _UsageParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors with exit status 1."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if not math.isfinite(number) or number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive number: {value!r}")
    return number


def default_output_path(input_path: str) -> str:
    base, _ext = os.path.splitext(input_path)
    return base + OUTPUT_SUFFIX


def build_parser() -> argparse.ArgumentParser:
    ap = _UsageParser(
        prog="crunch16",
        description="Two-pass encode a video to a 15-16 MB H.264/AAC MP4.",
        epilog=_EPILOG,
        allow_abbrev=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ap.add_argument(
        "-i", "--input", required=True, metavar="PATH", help="Source video (required)."
    )
    ap.add_argument(
        "-o",
        "--output",
        metavar="PATH",
        help=f'Output file (default: INPUT basename + "{OUTPUT_SUFFIX}").',
    )
    ap.add_argument(
        "-t",
        "--target-mb",
        type=_positive_float,
        default=DEFAULT_TARGET_MB,
        metavar="N",
        help=f"Target size in MB (default: {DEFAULT_TARGET_MB:g}).",
    )
    ap.add_argument(
        "-a",
        "--audio-kbps",
        type=_positive_float,
        default=DEFAULT_AUDIO_KBPS,
        metavar="N",
        help=f"Audio bitrate in kbps (default: {DEFAULT_AUDIO_KBPS:g}).",
    )
    ap.add_argument(
        "--keep-logs", action="store_true", help="Keep ffmpeg two-pass logs."
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv).",
    )
    return ap


def parse_args(argv: Optional[Sequence[str]] = None) -> EncodeJob:
    args = build_parser().parse_args(argv)
    return {
        "input_path": args.input,
        "output_path": args.output or default_output_path(args.input),
        "target_mb": args.target_mb,
        "audio_kbps": args.audio_kbps,
        "keep_logs": args.keep_logs,
        "passlog": PASSLOG_PREFIX,
        "verbose": args.verbose,
    }


def find_missing_tool(tools: Sequence[str] = REQUIRED_TOOLS) -> Optional[str]:
    for tool in tools:
        if shutil.which(tool) is None:
            return tool
    return None


def _print_command(cmd: Sequence[str]) -> None:
    if not VERBOSE_LEVEL:
        return
    cmdline = " ".join(shlex.quote(str(part)) for part in cmd)
    print(cmdline, file=sys.stderr)


def run(cmd: list[str]) -> None:
    print("+ " + " ".join(map(str, cmd)), file=sys.stderr)
    p = subprocess.run(cmd)
    if p.returncode != 0:
        raise SystemExit(p.returncode)


def _parse_duration_value(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    s = value.strip()
    if not s or s.lower() in {"n/a", "nan"}:
        return None
    try:
        duration = float(s)
    except ValueError:
        return None
    if not math.isfinite(duration):
        return None
    return duration


def probe_duration(path: str) -> float:
    """Return the container duration of ``path`` in seconds.

    Raises ValueError when ffprobe fails or reports nothing usable.
    """
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        path,
    ]
    _print_command(cmd)
    try:
        proc = subprocess.run(
            cmd,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except subprocess.CalledProcessError as exc:
        err = (
            exc.stderr.decode("utf-8", "replace").strip()
            if getattr(exc, "stderr", None)
            else ""
        )
        raise ValueError(err or f"ffprobe exited with code {exc.returncode}")
    stdout = proc.stdout.decode("utf-8", "replace")
    lines = stdout.strip().splitlines()
    duration = _parse_duration_value(lines[0] if lines else None)
    if duration is None:
        raise ValueError(f"ffprobe did not report duration for {path}")
    return duration


def plan_bitrates(duration: float, target_mb: float, audio_kbps: float) -> BitratePlan:
    """Split a size budget over ``duration`` seconds into ffmpeg bitrates.

    The video share never drops below MIN_VIDEO_KBPS, and the rate-control
    buffer is twice the video bitrate rounded up. A non-positive duration
    yields an all-zero plan; callers must treat that as a failure.
    """
    if duration <= 0:
        return {"total_kbps": 0.0, "video_kbps": 0.0, "buffer_kbps": 0}
    total_kbps = target_mb * KBITS_PER_MIB / duration
    video_kbps = max(total_kbps - audio_kbps, MIN_VIDEO_KBPS)
    buffer_kbps = math.ceil(video_kbps * 2)
    return {
        "total_kbps": total_kbps,
        "video_kbps": video_kbps,
        "buffer_kbps": buffer_kbps,
    }


def format_kbps(value: float) -> str:
    return f"{value:.0f}"


def format_number(value: float) -> str:
    return f"{value:.15g}"


def build_encode_command(job: EncodeJob, plan: BitratePlan, pass_number: int) -> List[str]:
    if pass_number not in (1, 2):
        raise ValueError(f"pass must be 1 or 2, got {pass_number}")
    video_rate = format_kbps(plan["video_kbps"]) + "k"
    cmd = ["ffmpeg", *FFMPEG_GLOBAL_FLAGS, "-i", job["input_path"]]
    cmd += ["-vf", f"scale=-2:{SCALE_HEIGHT}"]
    cmd += ["-c:v", VIDEO_CODEC, "-preset", VIDEO_PRESET, "-b:v", video_rate]
    cmd += ["-maxrate", video_rate, "-bufsize", f"{plan['buffer_kbps']}k"]
    cmd += ["-pass", str(pass_number), "-passlogfile", job["passlog"]]
    if pass_number == 1:
        cmd += ["-an", "-f", "mp4", os.devnull]
        return cmd
    cmd += [
        "-c:a",
        AUDIO_CODEC,
        "-b:a",
        format_number(job["audio_kbps"]) + "k",
        "-ac",
        str(AUDIO_CHANNELS),
        "-ar",
        str(AUDIO_SAMPLE_RATE),
    ]
    cmd += ["-pix_fmt", PIXEL_FORMAT, "-movflags", "+faststart", job["output_path"]]
    return cmd


def passlog_paths(prefix: str) -> List[str]:
    return [prefix + suffix for suffix in PASSLOG_SUFFIXES]


def remove_passlogs(prefix: str) -> None:
    for pth in passlog_paths(prefix):
        try:
            os.remove(pth)
        except FileNotFoundError:
            pass


def encode_two_pass(job: EncodeJob, plan: BitratePlan) -> None:
    logging.info("pass 1/2 (analysis): %s", job["input_path"])
    run(build_encode_command(job, plan, 1))
    logging.info("pass 2/2 (final): %s", job["output_path"])
    run(build_encode_command(job, plan, 2))
    if job["keep_logs"]:
        logging.info("keeping two-pass logs: %s", ", ".join(passlog_paths(job["passlog"])))
        return
    remove_passlogs(job["passlog"])


def size_in_mb(num_bytes: int) -> float:
    return round(num_bytes / 1024 / 1024, 2)


def classify_size(num_bytes: int) -> str:
    low, high = SIZE_WINDOW_MB
    size_mb = size_in_mb(num_bytes)
    if size_mb > high:
        return "above"
    if size_mb < low:
        return "below"
    return "within"


def _format_size_for_log(num_bytes: int) -> str:
    return f"{num_bytes / float(1024**2):.2f} MiB ({num_bytes:,} bytes)"


def report_result(output_path: str) -> str:
    num_bytes = os.path.getsize(output_path)
    logging.info("output size: %s", _format_size_for_log(num_bytes))
    print(f"Output: {output_path} ({size_in_mb(num_bytes):.2f} MB)")
    status = classify_size(num_bytes)
    if status == "above":
        print(
            f"Warning: above {SIZE_WINDOW_MB[1]:g} MB. "
            "Lower target with -t or reduce audio kbps."
        )
    elif status == "below":
        print(
            f"Note: below {SIZE_WINDOW_MB[0]:g} MB. "
            "Raise target with -t if you want more quality."
        )
    else:
        print(f"Within {SIZE_WINDOW_MB[0]:g}-{SIZE_WINDOW_MB[1]:g} MB window.")
    return status


def main(argv: Optional[Sequence[str]] = None) -> None:
    job = parse_args(argv)

    level = (
        logging.WARNING
        if job["verbose"] == 0
        else (logging.INFO if job["verbose"] == 1 else logging.DEBUG)
    )
    global VERBOSE_LEVEL
    VERBOSE_LEVEL = job["verbose"]
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    if not os.path.isfile(job["input_path"]):
        logging.error("input not found: %s", job["input_path"])
        sys.exit(1)

    missing = find_missing_tool()
    if missing:
        logging.error("missing dependency: %s", missing)
        sys.exit(1)

    try:
        duration = probe_duration(job["input_path"])
    except ValueError as exc:
        logging.error("could not read duration from input: %s", exc)
        sys.exit(1)

    plan = plan_bitrates(duration, job["target_mb"], job["audio_kbps"])
    if plan["total_kbps"] <= 0:
        logging.error("bitrate calculation failed (check duration/target)")
        sys.exit(1)

    print(f"Duration: {duration:.6f}s")
    print(f"Target size: {format_number(job['target_mb'])} MB")
    print(
        f"Bitrates: total ~{plan['total_kbps']:.2f} kbps, "
        f"video ~{format_kbps(plan['video_kbps'])} kbps, "
        f"audio {format_number(job['audio_kbps'])} kbps"
    )
    logging.debug("rate-control buffer: %d kbps", plan["buffer_kbps"])

    encode_two_pass(job, plan)
    report_result(job["output_path"])


if __name__ == "__main__":
    main()
