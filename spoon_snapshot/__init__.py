"""
Spoon Snapshot - capture installers as Turbo images inside disposable VMs.

This package provisions a Windows VM with Vagrant, runs an installer under
Turbo Studio's snapshot capture, imports the resulting image and destroys
the VM again.
"""

from .main import main

__version__ = "1.0.0"
__all__ = ["main"]
