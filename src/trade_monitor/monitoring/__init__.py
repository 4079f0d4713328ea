"""
Monitoring Layer - HTTP health check and control surface.

Usage:
    from trade_monitor.monitoring import create_control_app, create_control_server

    app = create_control_app(controller, dispatcher)
    server = create_control_server(app, port=3000)
    await server.serve()
"""

from .control import create_control_app, create_control_server

__all__ = [
    "create_control_app",
    "create_control_server",
]
