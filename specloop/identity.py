"""
specloop identity — version and banner shared by the CLI and the package.
"""

__version__ = "0.4.0"
__codename__ = "SPECLOOP"
__tagline__ = "Bounded loops. Honest budgets."

BANNER = r"""
  ___ ___  ___ ___ _    ___   ___  ___
 / __| _ \| __/ __| |  / _ \ / _ \| _ \
 \__ \  _/| _| (__| |_| (_) | (_) |  _/
 |___/_|  |___\___|____\___/ \___/|_|
"""
