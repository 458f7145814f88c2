"""
carpack: package directory trees into CAR v1 slices for storage deals.

- Slices sources into size-bounded CAR files (raw leaves, dag-json file and
  directory nodes) and records a raw manifest row per slice with its piece
  commitment.
- Reconciles the manifest into file descriptors and writes the JSON and CSV
  catalogs consumed by the upload and deal stages.
- Restores a set of CAR files back into a directory tree, joining files that
  were split across slices.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "descriptor",
    "manifest",
    "catalog",
    "packager",
    "restore",
    "slicer",
]

# Programmatic API: carpack.packager.package, carpack.manifest.reconcile,
# carpack.catalog.write_catalog and carpack.restore.restore.
