"""H5P content-type registry.

Keeps a catalog of versioned H5P libraries from three provenances
(upstream hub mirror, curated catalog, tenant uploads), resolves their
dependency graph into load order and installs package archives.
"""

__version__ = "0.1.0"
