import logging
from typing import Any, MutableMapping, Tuple


LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    # aiohttp logs every probe request at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class AgentLoggerAdapter(logging.LoggerAdapter):
    """
    Prefixes records with the agent name, e.g. "[echo-bot] Handling !ping"
    """
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = kwargs.setdefault("extra", {})
        extra.setdefault("agent", self.extra["agent"])
        return f"[{self.extra['agent']}] {msg}", kwargs
