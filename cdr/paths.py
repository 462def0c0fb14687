"""Dotted field paths and nested merge patches.

Path syntax: ``spec.template.spec.containers[0].image``. Keys containing dots
(config map keys such as ``app.properties``) are written as ``data["app.properties"]``.

A patch is a nested dict. Where the target document holds a list, the patch
addresses elements positionally with an int-keyed dict (``{0: {...}}``); a list
value in a patch replaces the target wholesale.
"""
from __future__ import annotations

import copy
import json
import re
from typing import Any, Iterator

Segment = str | int

MISSING: Any = object()

_TOKEN_RE = re.compile(r'\["((?:[^"\\]|\\.)*)"\]|\[(\d+)\]|\.?([^.\[\]]+)')


def parse_path(path: str) -> list[Segment]:
    if not path:
        raise ValueError("empty field path")
    out: list[Segment] = []
    pos = 0
    while pos < len(path):
        m = _TOKEN_RE.match(path, pos)
        if not m or m.end() == pos:
            raise ValueError(f"invalid field path {path!r} at offset {pos}")
        quoted, index, plain = m.groups()
        if quoted is not None:
            out.append(json.loads(f'"{quoted}"'))
        elif index is not None:
            out.append(int(index))
        else:
            out.append(plain)
        pos = m.end()
    return out


def format_path(segments: list[Segment]) -> str:
    parts: list[str] = []
    for seg in segments:
        if isinstance(seg, int):
            parts.append(f"[{seg}]")
        elif "." in seg or "[" in seg or "]" in seg or '"' in seg:
            parts.append(f"[{json.dumps(seg)}]")
        elif parts:
            parts.append(f".{seg}")
        else:
            parts.append(seg)
    return "".join(parts)


def parse_pointer(pointer: str) -> list[Segment]:
    """Parse an RFC 6901 JSON pointer. Numeric tokens become list indices."""
    out: list[Segment] = []
    for tok in pointer.lstrip("/").split("/"):
        tok = tok.replace("~1", "/").replace("~0", "~")
        out.append(int(tok) if tok.isdigit() else tok)
    return out


def to_pointer(segments: list[Segment]) -> str:
    return "/" + "/".join(str(s).replace("~", "~0").replace("/", "~1") for s in segments)


def get_path(doc: Any, segments: list[Segment], default: Any = MISSING) -> Any:
    cur = doc
    for seg in segments:
        if isinstance(seg, int):
            if not isinstance(cur, list) or seg >= len(cur):
                return default
            cur = cur[seg]
        else:
            if not isinstance(cur, dict) or seg not in cur:
                return default
            cur = cur[seg]
    return cur


def build_patch(segments: list[Segment], value: Any) -> dict:
    """Minimal patch that sets exactly `segments` to `value`."""
    if not segments:
        raise ValueError("cannot build a patch for an empty path")
    patch: Any = copy.deepcopy(value)
    for seg in reversed(segments):
        patch = {seg: patch}
    return patch


def materialize(patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    if patch and all(isinstance(k, int) for k in patch):
        out: list[Any] = [{} for _ in range(max(patch) + 1)]
        for idx, sub in patch.items():
            out[idx] = materialize(sub)
        return out
    return {k: materialize(v) for k, v in patch.items()}


def apply_patch(doc: Any, patch: Any) -> Any:
    """Return a copy of `doc` with `patch` deep-merged in. Never mutates `doc`.

    Applying the same patch twice gives the same result as applying it once.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    if isinstance(doc, list) and patch and all(isinstance(k, int) for k in patch):
        out = copy.deepcopy(doc)
        for idx, sub in sorted(patch.items()):
            while len(out) <= idx:
                out.append({})
            out[idx] = apply_patch(out[idx], sub)
        return out
    if isinstance(doc, dict):
        out = dict(doc)
        for k, v in patch.items():
            out[k] = apply_patch(doc[k], v) if k in doc else materialize(v)
        return out
    return materialize(patch)


def merge_patches(first: dict, second: dict) -> dict:
    """Combine two patches; `second` wins where branches overlap."""
    out = dict(first)
    for k, v in second.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = merge_patches(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def patch_leaves(patch: Any, prefix: list[Segment] | None = None) -> Iterator[tuple[list[Segment], Any]]:
    """Yield (segments, value) for every leaf a patch sets."""
    prefix = prefix or []
    if isinstance(patch, dict) and patch:
        for k, v in patch.items():
            yield from patch_leaves(v, prefix + [k])
    else:
        yield prefix, patch


def subtract_paths(patch: dict, drop: list[list[Segment]]) -> dict:
    """Return `patch` without the leaves listed in `drop`."""
    out: dict = {}
    for segments, value in patch_leaves(patch):
        if segments in drop:
            continue
        out = merge_patches(out, build_patch(segments, value))
    return out


def to_json_patch(doc: Any, patch: dict) -> list[dict[str, Any]]:
    """Render a merge patch as RFC 6902 operations against `doc`."""
    ops: list[dict[str, Any]] = []
    for segments, value in patch_leaves(patch):
        if get_path(doc, segments) is not MISSING:
            ops.append({"op": "replace", "path": to_pointer(segments), "value": copy.deepcopy(value)})
        else:
            # "add" needs the parent to exist; create the first missing container whole.
            for depth in range(1, len(segments)):
                if get_path(doc, segments[:depth]) is MISSING:
                    sub = build_patch(segments[depth:], value)
                    ops.append({"op": "add", "path": to_pointer(segments[:depth]), "value": materialize(sub)})
                    break
            else:
                ops.append({"op": "add", "path": to_pointer(segments), "value": copy.deepcopy(value)})
        doc = apply_patch(doc, build_patch(segments, value))
    return ops


def jsonable(patch: Any) -> Any:
    """Patch with int keys rendered as strings, for JSON output."""
    if isinstance(patch, dict):
        return {str(k): jsonable(v) for k, v in patch.items()}
    if isinstance(patch, list):
        return [jsonable(x) for x in patch]
    return patch
