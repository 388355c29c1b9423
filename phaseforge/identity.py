"""
PHASEFORGE Identity

Name, version and banner shared by the CLI.
"""

from phaseforge import __version__

__codename__ = "PHASEFORGE"
__tagline__ = "Plan in phases. Ship in one PR."

BANNER = r"""
  ___ _  _   _   ___ ___ ___ ___  ___  ___ ___
 | _ \ || | /_\ / __| __| __/ _ \| _ \/ __| __|
 |  _/ __ |/ _ \\__ \ _|| _| (_) |   / (_ | _|
 |_| |_||_/_/ \_\___/___|_| \___/|_|_\\___|___|
"""

__all__ = ["__codename__", "__tagline__", "__version__", "BANNER"]
