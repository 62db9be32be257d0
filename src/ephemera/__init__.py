"""Ephemera - short-lived database instances cloned from snapshotted images.

The interesting part of ephemera is its access-control plane:

- ``ephemera.auth``: bearer authentication, credential validity checks and
  the OAuth handshake that joins a browser redirect to a waiting API client
- ``ephemera.instances``: port allocation and the revoked-credential cleaner
- ``ephemera.firewall``: the iptables whitelist reconciler
"""

__version__ = "0.4.0"
