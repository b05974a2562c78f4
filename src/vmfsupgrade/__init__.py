"""vmfs-upgrade — in-place VMFS datastore format upgrade for vSphere."""

__version__ = "0.1.0"
