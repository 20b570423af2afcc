"""
セッションエクスポート — 完了済みセッションの YAML 出力と上限付きワーカープール

完了済みセッションの順序付きイベントを読み取り専用で受け渡す。
エクスポートは ExportQueue の固定数ワーカーで処理し、キューが満杯の場合は
submit が空きを待つ（submit_nowait は ExportQueueFull を送出する）。

主な機能:
  - session_to_dict / save_session_yaml / load_session_yaml: ruamel.yaml による入出力
  - YamlSessionExporter: セッションごとに 1 ファイルを出力するエクスポーター
  - ExportQueue: 上限付きキュー、ジョブの取り消し、終了処理
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from ruamel.yaml import YAML

from ..errors import ExportQueueFull, SessionStateError
from ..models import RecordingSession, SessionStatus

logger = logging.getLogger(__name__)

Exporter = Callable[[RecordingSession], Union[Awaitable[Any], Any]]


# ---------------------------------------------------------------------------
# YAML 入出力
# ---------------------------------------------------------------------------

def session_to_dict(session: RecordingSession) -> dict[str, Any]:
    """セッションをワイヤー形式（camelCase）の辞書に変換する。"""
    return session.model_dump(mode="json", by_alias=True, exclude_none=True)


def save_session_yaml(session: RecordingSession, path: str | Path) -> Path:
    """セッションを YAML ファイルとして保存する。

    Args:
        session: 保存するセッション
        path: 出力先ファイルパス

    Returns:
        保存したファイルのパス
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    yaml = YAML()
    yaml.default_flow_style = False

    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(session_to_dict(session), f)

    logger.info("セッションを保存しました: %s (%d イベント)", path, len(session.events))
    return path


def load_session_yaml(path: str | Path) -> RecordingSession:
    """YAML ファイルからセッションを読み込む。"""
    yaml = YAML(typ="safe")
    data = yaml.load(Path(path).read_text(encoding="utf-8"))
    return RecordingSession.model_validate(data)


@dataclass
class YamlSessionExporter:
    """セッションを <output_dir>/<session_id>.yaml に保存するエクスポーター。"""

    output_dir: Path = field(default_factory=lambda: Path("recordings"))

    async def __call__(self, session: RecordingSession) -> Path:
        path = Path(self.output_dir) / f"{session.id}.yaml"
        return await asyncio.to_thread(save_session_yaml, session, path)


# ---------------------------------------------------------------------------
# ExportQueue
# ---------------------------------------------------------------------------

@dataclass
class _ExportJob:
    session: RecordingSession
    future: asyncio.Future
    task: Optional[asyncio.Task] = None


class ExportQueue:
    """上限付きのエクスポートワーカープール。

    使用例::

        queue = ExportQueue(YamlSessionExporter(Path("out")), workers=2, max_pending=8)
        await queue.start()
        future = await queue.submit(session)
        path = await future
        await queue.shutdown()
    """

    def __init__(self, exporter: Exporter, workers: int = 2, max_pending: int = 16) -> None:
        """ExportQueue を初期化する。

        Args:
            exporter: セッションを受け取ってエクスポートする関数（同期・非同期どちらも可）
            workers: 並行して処理するワーカー数
            max_pending: キューに保持できるジョブ数の上限
        """
        if workers < 1:
            raise ValueError(f"workers は 1 以上で指定してください: {workers}")
        if max_pending < 1:
            raise ValueError(f"max_pending は 1 以上で指定してください: {max_pending}")
        self._exporter = exporter
        self._worker_count = workers
        self._queue: asyncio.Queue[Optional[_ExportJob]] = asyncio.Queue(maxsize=max_pending)
        self._workers: list[asyncio.Task] = []
        self._jobs: dict[str, _ExportJob] = {}
        self._closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self._worker_count)
        ]
        logger.debug("エクスポートワーカーを起動しました: %d", self._worker_count)

    # -------------------------------------------------------------------
    # 投入・取り消し
    # -------------------------------------------------------------------

    def _make_job(self, session: RecordingSession) -> _ExportJob:
        if self._closed:
            raise RuntimeError("ExportQueue は終了しています")
        if session.status != SessionStatus.COMPLETED:
            raise SessionStateError(
                f"完了していないセッションはエクスポートできません: {session.id} ({session.status.value})"
            )
        job = _ExportJob(session=session, future=asyncio.get_running_loop().create_future())
        return job

    async def submit(self, session: RecordingSession) -> asyncio.Future:
        """ジョブを投入する。キューが満杯の場合は空きを待つ。

        Returns:
            エクスポート結果を受け取る Future
        """
        job = self._make_job(session)
        self._jobs[session.id] = job
        await self._queue.put(job)
        logger.debug("エクスポートを投入しました: %s", session.id)
        return job.future

    def submit_nowait(self, session: RecordingSession) -> asyncio.Future:
        """ジョブを投入する。キューが満杯の場合は待たずにエラーとする。

        Raises:
            ExportQueueFull: キューが満杯の場合
        """
        job = self._make_job(session)
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull as exc:
            raise ExportQueueFull(f"エクスポートキューが満杯です: {session.id}") from exc
        self._jobs[session.id] = job
        return job.future

    def cancel(self, session_id: str) -> bool:
        """待機中または実行中のジョブを取り消す。

        Returns:
            取り消した場合は True
        """
        job = self._jobs.pop(session_id, None)
        if job is None or job.future.done():
            return False
        if job.task is not None:
            job.task.cancel()
        job.future.cancel()
        logger.info("エクスポートを取り消しました: %s", session_id)
        return True

    # -------------------------------------------------------------------
    # ワーカー
    # -------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                if job.future.done():
                    continue
                job.task = asyncio.create_task(self._run(job.session))
                try:
                    result = await job.task
                except asyncio.CancelledError:
                    if not job.future.done():
                        job.future.cancel()
                    if asyncio.current_task().cancelling():
                        raise
                except Exception as exc:
                    logger.exception("エクスポートに失敗しました: %s", job.session.id)
                    if not job.future.done():
                        job.future.set_exception(exc)
                else:
                    if not job.future.done():
                        job.future.set_result(result)
                finally:
                    if self._jobs.get(job.session.id) is job:
                        del self._jobs[job.session.id]
            finally:
                self._queue.task_done()

    async def _run(self, session: RecordingSession) -> Any:
        if inspect.iscoroutinefunction(self._exporter) or inspect.iscoroutinefunction(
            getattr(self._exporter, "__call__", None)
        ):
            return await self._exporter(session)
        result = await asyncio.to_thread(self._exporter, session)
        if inspect.isawaitable(result):
            return await result
        return result

    async def join(self) -> None:
        """投入済みのジョブがすべて処理されるまで待機する。"""
        await self._queue.join()

    async def shutdown(self, cancel_pending: bool = False) -> None:
        """ワーカーを停止する。

        Args:
            cancel_pending: True の場合は待機中・実行中のジョブを取り消す
        """
        self._closed = True
        if cancel_pending:
            for session_id in list(self._jobs):
                self.cancel(session_id)
        for _ in self._workers:
            await self._queue.put(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.debug("エクスポートワーカーを停止しました")
