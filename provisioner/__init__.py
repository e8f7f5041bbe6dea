"""
Static Site Provisioner

Boot-time provisioning of a single host serving a built single-page
application through nginx: packages, checkout, build, web server
configuration and a redeploy launcher.
"""

__version__ = "1.0.0"
