"""
Shell 文本切分（segments/tokens）。

说明：
- 仅做字面切分：不做变量展开、通配、命令替换；
- 与 `shlex` 不同：segment 切分必须识别未转义的 `;`/`|`/`&` 与换行，并保留 segment 内的原始引号，
  以便 `bash -c "<script>"` 的 inline script 能被再次切分校验。
"""

from __future__ import annotations

from typing import List, Optional

_SEGMENT_BREAKS = (";", "|", "&", "\n")


def split_segments(command: str) -> List[str]:
    """
    按未转义、未被引号包围的 `;`、`|`、`&` 与换行切分命令。

    规则：
    - 换行与 `;` 等价，多行脚本逐行校验；
    - `&&` / `||` 视为一个分隔符；
    - segment 内的引号与反斜杠原样保留；
    - 空 segment 被丢弃。
    """

    out: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    escaped = False
    i = 0
    n = len(command)

    while i < n:
        ch = command[i]

        if escaped:
            current.append(ch)
            escaped = False
            i += 1
            continue

        if ch == "\\" and quote != "'":
            current.append(ch)
            escaped = True
            i += 1
            continue

        if quote is not None:
            current.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in ("'", '"'):
            quote = ch
            current.append(ch)
            i += 1
            continue

        if ch in _SEGMENT_BREAKS:
            segment = "".join(current).strip()
            if segment:
                out.append(segment)
            current = []
            nxt = command[i + 1] if i + 1 < n else ""
            if ch in ("|", "&") and nxt == ch:
                i += 1
            i += 1
            continue

        current.append(ch)
        i += 1

    tail = "".join(current).strip()
    if tail:
        out.append(tail)
    return out


def tokenize(segment: str) -> List[str]:
    """
    将单个 segment 按空白切分为参数 token。

    规则：
    - 单/双引号内的空白不切分，引号本身被去除；
    - 反斜杠转义下一个字符（单引号内不生效）；
    - `a\\ b` 保持为一个 token `a b`。
    """

    tokens: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    escaped = False

    for ch in segment:
        if escaped:
            current.append(ch)
            escaped = False
            continue

        if ch == "\\" and quote != "'":
            escaped = True
            continue

        if quote is not None:
            if ch == quote:
                quote = None
            else:
                current.append(ch)
            continue

        if ch in ("'", '"'):
            quote = ch
            continue

        if ch.isspace():
            if current:
                tokens.append("".join(current))
            current = []
            continue

        current.append(ch)

    if current:
        tokens.append("".join(current))
    return tokens
