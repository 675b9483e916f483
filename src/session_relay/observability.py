"""Observability setup.

Logfire for tracing and logging. Without a LOGFIRE_TOKEN nothing leaves
the machine; with debug=True spans and logs also go to the console.
"""

import logfire


def configure(service_name: str = "session_relay", debug: bool = False) -> None:
    """Configure Logfire.

    Args:
        service_name: Name to identify this service in traces.
        debug: If True, also log to console. Default False (quiet mode).
    """
    logfire.configure(
        service_name=service_name,
        send_to_logfire="if-token-present",
        console=logfire.ConsoleOptions(min_log_level="debug") if debug else False,
    )
