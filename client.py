#!/usr/bin/env python3
"""
Face Detection Service — API Client
===================================

Usage:
    # Face coordinates as JSON
    python client.py --type json

    # Annotated snapshot, saved locally
    python client.py --type image --out faces.jpg

    # Against another host
    python client.py --url http://raspberrypi.local:8080 --type json
"""

import argparse
import re
import sys
from pathlib import Path

import requests


def fetch_json(url: str) -> None:
    """Ask for face coordinates and print them one per line."""
    r = requests.get(f"{url}/getResult", params={"type": "json"}, timeout=30)
    r.raise_for_status()
    if not r.headers.get("content-type", "").startswith("application/json"):
        # The service reports camera/model failures as plain text
        print(f"Service error: {r.text.strip()}")
        sys.exit(1)
    faces = r.json()["faces"]
    print(f"{len(faces)} face(s)")
    for i, f in enumerate(faces, 1):
        print(f"  #{i}: x={f['x']} y={f['y']} {f['width']}x{f['height']}")


def fetch_image(url: str, out: str) -> None:
    """Trigger an annotated snapshot, then download it through the static route."""
    r = requests.get(f"{url}/getResult", params={"type": "image"}, timeout=30)
    r.raise_for_status()
    m = re.search(r'<img src="([^"]+)"', r.text)
    if m is None:
        print(f"Service error: {r.text.strip()}")
        sys.exit(1)

    image_url = f"{url}/{m.group(1)}"
    print(f"Downloading {image_url} -> {out}")
    with requests.get(image_url, stream=True, timeout=30) as img:
        img.raise_for_status()
        total = 0
        with open(out, "wb") as f:
            for chunk in img.iter_content(chunk_size=128 * 1024):
                f.write(chunk)
                total += len(chunk)
    print(f"Saved: {out} ({total / 1024:.0f} KB)")


def main():
    p = argparse.ArgumentParser(description="Face Detection Service client")
    p.add_argument("--url", default="http://localhost:8080",
                   help="Service base URL")
    p.add_argument("--type", choices=["json", "image"], default="json",
                   help="Result format to request")
    p.add_argument("--out", default="image.jpg",
                   help="Where to save the annotated image (--type image)")
    args = p.parse_args()
    url = args.url.rstrip("/")

    # Health check
    try:
        r = requests.get(f"{url}/health", timeout=10)
        r.raise_for_status()
        info = r.json()
        print(f"Server: {info.get('status')} | "
              f"detector loaded: {info.get('detector_loaded')} | "
              f"camera busy: {info.get('device_busy')}")
    except requests.ConnectionError:
        print(f"Cannot reach {url}"); sys.exit(1)

    if args.type == "json":
        fetch_json(url)
    else:
        Path(args.out).parent.mkdir(parents=True, exist_ok=True)
        fetch_image(url, args.out)


if __name__ == "__main__":
    main()
