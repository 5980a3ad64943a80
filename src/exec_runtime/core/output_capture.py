"""
输出捕获缓冲（有界，按字符计数）。

两种策略：
- `OutputCapture`：前台执行使用；保留头部，超出预算后丢弃后续文本并锁存 truncated；
- `SessionStream`：后台 session 使用；滚动保留尾部（丢弃最旧 chunk），同时维护 drain offset。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass
class OutputCapture:
    """前台输出捕获（头部保留）。"""

    chunks: List[str] = field(default_factory=list)
    chars: int = 0
    truncated: bool = False

    def push(self, text: str, max_chars: int) -> None:
        """追加文本；超出剩余预算的部分被丢弃，预算已满后的任何 push（含空串）都会置位 truncated，且不再复位。"""

        if max_chars <= 0:
            self.truncated = True
            return
        remaining = max_chars - self.chars
        if remaining <= 0:
            self.truncated = True
            return
        if len(text) <= remaining:
            if text:
                self.chunks.append(text)
                self.chars += len(text)
            return
        self.chunks.append(text[:remaining])
        self.chars += remaining
        self.truncated = True

    def text(self) -> str:
        return "".join(self.chunks)


class SessionStream:
    """
    后台 session 的单路输出缓冲（尾部滚动保留）。

    说明：
    - offset 指向“下一次 drain 的起始 chunk”；丢弃头部 chunk 时同步左移，保证 drain 不重复也不跳读。
    - 并发保护由 ProcessSession 的锁负责，本类不加锁。
    """

    def __init__(self, *, max_chars: int, max_chunks: int) -> None:
        if max_chars < 1 or max_chunks < 1:
            raise ValueError("max_chars/max_chunks must be >= 1")
        self._max_chars = max_chars
        self._max_chunks = max_chunks
        self.chunks: List[str] = []
        self.chars = 0
        self.truncated = False
        self.offset = 0

    def push(self, chunk: str) -> None:
        if not chunk:
            return
        self.chunks.append(chunk)
        self.chars += len(chunk)
        dropped = 0
        while self.chunks and (self.chars > self._max_chars or len(self.chunks) > self._max_chunks):
            if len(self.chunks) == 1:
                # 单个 chunk 超过上限：保留其尾部
                self.chunks[0] = self.chunks[0][-self._max_chars :]
                self.chars = len(self.chunks[0])
                self.truncated = True
                break
            removed = self.chunks.pop(0)
            self.chars -= len(removed)
            dropped += 1
        if dropped:
            self.truncated = True
            self.offset = max(0, self.offset - dropped)

    def drain(self) -> str:
        """返回上次 drain 之后新增的文本，并推进 offset。"""

        new = self.chunks[self.offset :]
        self.offset = len(self.chunks)
        return "".join(new)

    def text(self) -> str:
        return "".join(self.chunks)
