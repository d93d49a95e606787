import time

import aiohttp

from loam.main.logging import get_logger

logger = get_logger(__name__)

SLOW_DNS_THRESHOLD_MS = 2000


class AioHttpClient:
    """Process-wide aiohttp session shared by the upstream API clients."""

    session: aiohttp.ClientSession = None

    def __init__(self, total_timeout: float = 30.0, connect_timeout: float = 10.0):
        self._total_timeout = total_timeout
        self._connect_timeout = connect_timeout

    def _create_trace_config(self) -> aiohttp.TraceConfig:
        """Warn about slow DNS, which shows up as mysterious upstream timeouts."""
        trace = aiohttp.TraceConfig()

        async def on_dns_start(session, trace_config_ctx, params):
            trace_config_ctx._dns_start_time = time.perf_counter()

        async def on_dns_end(session, trace_config_ctx, params):
            if not hasattr(trace_config_ctx, "_dns_start_time"):
                return
            dns_duration_ms = (time.perf_counter() - trace_config_ctx._dns_start_time) * 1000
            if dns_duration_ms > SLOW_DNS_THRESHOLD_MS:
                logger.warning(
                    f"SLOW DNS resolution detected for {params.host}",
                    extra={
                        "event": "dns_slow",
                        "host": params.host,
                        "duration_ms": int(dns_duration_ms),
                        "threshold_ms": SLOW_DNS_THRESHOLD_MS,
                    },
                )

        trace.on_dns_resolvehost_start.append(on_dns_start)
        trace.on_dns_resolvehost_end.append(on_dns_end)

        return trace

    def start(self):
        timeout = aiohttp.ClientTimeout(
            total=self._total_timeout,
            connect=self._connect_timeout,
        )
        connector = aiohttp.TCPConnector(
            limit=50,
            limit_per_host=10,
            enable_cleanup_closed=True,
            use_dns_cache=True,
            ttl_dns_cache=300,
        )

        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            trace_configs=[self._create_trace_config()],
        )

    async def stop(self):
        if self.session is not None:
            await self.session.close()
        self.session = None

    def __call__(self) -> aiohttp.ClientSession:
        assert self.session is not None, "AioHttpClient.start() has not been called"
        return self.session


aiohttp_client = AioHttpClient()
