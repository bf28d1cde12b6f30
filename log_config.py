import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Streamlit server access logs, noisy with health checks
ACCESS_LOGGERS = ("tornado.access", "streamlit.web.server")
HEALTH_CHECK_PATHS = ("/healthz", "/_stcore/health", "/_stcore/host-config")

# HTTP client libraries log every request at INFO
QUIET_LOGGERS = ("urllib3", "httpx", "hpack", "geopy")


class HealthCheckFilter(logging.Filter):
    def __init__(self, paths=HEALTH_CHECK_PATHS):
        super().__init__()
        self.paths = tuple(paths)

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not any(path in msg for path in self.paths)


def setup_logging(level: str = "INFO"):
    """Configure root logging for the app; safe to call on every Streamlit rerun."""
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
    for name in ACCESS_LOGGERS:
        access_logger = logging.getLogger(name)
        if not any(isinstance(f, HealthCheckFilter) for f in access_logger.filters):
            access_logger.addFilter(HealthCheckFilter())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
