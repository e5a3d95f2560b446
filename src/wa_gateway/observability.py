"""Observability setup.

Configures Logfire for tracing and logging. Traces are shipped only when
a LOGFIRE_TOKEN is present; otherwise logfire stays local.
"""

import logfire


def configure(service_name: str = "wa_gateway", debug: bool = False) -> None:
    """Configure observability.

    Args:
        service_name: Name to identify this service in traces.
        debug: If True, also log to console. Default False (quiet mode).
    """
    logfire.configure(
        service_name=service_name,
        send_to_logfire="if-token-present",
        console=logfire.ConsoleOptions(min_log_level="debug") if debug else False,
    )
