"""
后台 session 结束通知（best-effort）。

说明：
- 仅对 backgrounded 且 opt-in（notify_on_exit）的 session 生效，每个 session 至多通知一次；
- completed 且输出为空时默认跳过（除非 notify_on_exit_empty_success）；
- notifier 抛出的异常会被记录并吞掉，不影响 session 生命周期。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from exec_runtime.core.exec_sessions import ProcessSession

logger = logging.getLogger(__name__)

DEFAULT_NOTIFY_TAIL_CHARS = 400
DEFAULT_NOTIFY_SNIPPET_CHARS = 180

_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class SessionExitNotice:
    """一条结束通知。"""

    session_id: str
    short_id: str
    scope_key: Optional[str]
    status: str
    exit_label: str
    output: str
    summary: str


Notifier = Callable[[SessionExitNotice], None]


def normalize_notify_output(value: str) -> str:
    return _WS_RE.sub(" ", value).strip()


def compact_notify_output(value: str, max_chars: int = DEFAULT_NOTIFY_SNIPPET_CHARS) -> str:
    """压缩空白并截断到 max_chars（超出时以 `…` 结尾）。"""

    normalized = normalize_notify_output(value)
    if not normalized:
        return ""
    if len(normalized) <= max_chars:
        return normalized
    safe = max(1, max_chars - 1)
    return f"{normalized[:safe]}…"


def build_exit_notice(
    session: ProcessSession,
    *,
    tail_chars: int = DEFAULT_NOTIFY_TAIL_CHARS,
    snippet_chars: int = DEFAULT_NOTIFY_SNIPPET_CHARS,
) -> Optional[SessionExitNotice]:
    """
    为已结束的 session 构建通知；不满足条件时返回 None。

    返回：
    - `SessionExitNotice`，或 None（未 opt-in / 已通知 / completed 且输出为空）
    """

    if not session.backgrounded or not session.notify_on_exit or session.exit_notified:
        return None
    exit_label = f"signal {session.exit_signal}" if session.exit_signal else f"code {session.exit_code or 0}"
    full = session.full_output()
    tail = full[-tail_chars:] if tail_chars > 0 else ""
    output = compact_notify_output(tail, snippet_chars)
    if session.status == "completed" and not output and not session.notify_on_exit_empty_success:
        return None
    short_id = session.id[:8]
    head = f"Exec {session.status} ({short_id}, {exit_label})"
    summary = f"{head} :: {output}" if output else head
    return SessionExitNotice(
        session_id=session.id,
        short_id=short_id,
        scope_key=session.scope_key,
        status=session.status,
        exit_label=exit_label,
        output=output,
        summary=summary,
    )


def maybe_notify_on_exit(
    session: ProcessSession,
    notifier: Optional[Notifier],
    *,
    tail_chars: int = DEFAULT_NOTIFY_TAIL_CHARS,
    snippet_chars: int = DEFAULT_NOTIFY_SNIPPET_CHARS,
) -> bool:
    """发送结束通知（至多一次）；返回是否已投递给 notifier。"""

    if notifier is None:
        return False
    notice = build_exit_notice(session, tail_chars=tail_chars, snippet_chars=snippet_chars)
    if notice is None:
        return False
    session.exit_notified = True
    try:
        notifier(notice)
    except Exception:
        logger.warning("exit notifier failed (session=%s)", session.id, exc_info=True)
        return False
    return True
