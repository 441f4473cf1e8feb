#!/usr/bin/env python3
import argparse
import sys
from pathlib import Path

from ambros.errors import AmbrosError
from ambros.plugins.manifest import MANIFEST_FILENAME, load_manifest, validate_manifest


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate an ambros plugin.json")
    parser.add_argument("manifest_path", help="Path to plugin.json or to the plugin directory")
    args = parser.parse_args()

    path = Path(args.manifest_path)
    if path.is_dir():
        path = path / MANIFEST_FILENAME
    try:
        manifest = load_manifest(path)
    except AmbrosError as exc:
        print(f"Invalid manifest: {exc}", file=sys.stderr)
        return 1

    errors = validate_manifest(manifest)
    if errors:
        print("Manifest validation failed:")
        for err in errors:
            print(f"- {err}")
        return 2
    print(f"Manifest validation passed ({manifest.name} {manifest.version}, type {manifest.type}).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
