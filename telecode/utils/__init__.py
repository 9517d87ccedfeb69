"""Utility helpers for telecode."""

from telecode.utils.helpers import ensure_dir, read_json_file, write_json_file

__all__ = ["ensure_dir", "read_json_file", "write_json_file"]
