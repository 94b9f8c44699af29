"""termrelay -- per-client interactive CLI sessions over WebSockets.

Each connected client gets its own long-lived interactive process on a
pseudo-terminal. The relay forwards text both ways and tears the process
down on disconnect, process exit, idle timeout, or server shutdown. When
the CLI cannot be spawned, a simulated responder keeps the relay usable
for demos.
"""

__version__ = "0.1.0"
