"""検証モジュール - 許可先への軽量な到達性プローブ（診断のみ）."""

import asyncio
from dataclasses import dataclass

import httpx

from .config import ProbeTarget
from .logger import ComponentType, log_debug, log_event, log_probe_result, log_warning


@dataclass(frozen=True)
class ProbeResult:
    """プローブ結果."""

    url: str
    label: str
    reachable: bool


class Verifier:
    """HEADリクエストで許可先の到達性を確認.

    各プローブは接続タイムアウトと全体の制限時間（max_time）で打ち切る。
    失敗してもポリシーのロールバックや終了コードの変更は行わない。
    """

    def __init__(
        self,
        targets: list[ProbeTarget],
        connect_timeout: float = 5.0,
        max_time: float = 10.0,
    ) -> None:
        self.targets = targets
        self.max_time = max_time
        self.timeout = httpx.Timeout(max_time, connect=connect_timeout)

    async def probe(self, client: httpx.AsyncClient, target: ProbeTarget) -> ProbeResult:
        """1件のプローブ（max_time内にHTTPレスポンスが返れば到達可能）."""
        try:
            await asyncio.wait_for(client.head(target.url), self.max_time)
            reachable = True
        except asyncio.TimeoutError:
            log_debug(ComponentType.VERIFY, "Probe exceeded max time", url=target.url)
            reachable = False
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            log_debug(ComponentType.VERIFY, "Probe failed", url=target.url, error=str(e))
            reachable = False

        log_probe_result(target.label, target.url, reachable)
        return ProbeResult(url=target.url, label=target.label, reachable=reachable)

    async def _probe_all(self) -> list[ProbeResult]:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
            return [await self.probe(client, target) for target in self.targets]

    def verify(self) -> list[ProbeResult]:
        """全プローブを順番に実行し、全体の結果をログ出力."""
        results = asyncio.run(self._probe_all())

        if all(result.reachable for result in results):
            log_event(ComponentType.VERIFY, "Verification passed.")
        else:
            log_warning(
                ComponentType.VERIFY,
                "Verification had failures.",
                failed=",".join(r.label for r in results if not r.reachable),
            )
        return results
