"""sha256 指纹：信号去重键、回测 run_id、K 线数据文件。"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return hashlib.sha256(text.encode(encoding)).hexdigest()


def sha256_json(payload: Any) -> str:
    """键排序后的 JSON 哈希，dict 插入顺序不影响结果。"""
    return sha256_text(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def sha256_file(path: str | Path, *, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()
