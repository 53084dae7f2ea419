"""
Quick local test helper: removes the background of a local image, a remote
URL, or a camera frame. With --output the RGBA PNG is written to disk and the
server is bypassed; otherwise the cut-out is uploaded to --server and, with
--video, rendered into the template video.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bgvideo_service.capture import fetch_url_source
from bgvideo_service.client import CaptureSurface, StatusLine, UploadClient
from bgvideo_service.removal import process_image_bytes


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remove an image background and optionally build the video")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", help="Path to the input image")
    source.add_argument("--url", help="Remote image URL")
    source.add_argument("--camera", type=int, metavar="INDEX", help="Capture one frame from this camera")
    parser.add_argument("--output", help="Write the RGBA PNG here instead of uploading")
    parser.add_argument("--server", default="http://localhost:3000", help="Server base URL")
    parser.add_argument("--video", action="store_true", help="Request a video after uploading")
    parser.add_argument("--text", help="Caption drawn on the video")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    status = StatusLine(on_change=lambda text: print(text, file=sys.stderr))
    surface = CaptureSurface(UploadClient(args.server), status=status)
    if not await surface.load_model():
        return 1

    if args.output:
        if args.input:
            data = Path(args.input).read_bytes()
        elif args.url:
            data = fetch_url_source(args.url)
        else:
            data = surface.open_camera(args.camera).capture()
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(process_image_bytes(data, service=surface.service))
        print(f"Wrote RGBA output to {output_path}")
        return 0

    if args.input:
        uploaded = await surface.from_file(Path(args.input))
    elif args.url:
        uploaded = await surface.from_url(args.url)
    else:
        uploaded = await surface.from_camera(args.camera)
    if uploaded is None:
        return 1
    print(f"Image: {uploaded['imageUrl']}")

    if args.video:
        video = await surface.create_video(s3_key=uploaded["s3Key"], text=args.text)
        if video is None:
            return 1
        print(f"Video: {video['videoUrl']}")
    return 0


def main() -> None:
    sys.exit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
