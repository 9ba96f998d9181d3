"""ocirootfs: turn a remote OCI image reference into a bootable ext4 rootfs.

Pipeline:
  - Parse the image reference and resolve it against its registry
  - Select the manifest for the target OS/architecture (index or single manifest)
  - Stream each layer, in manifest order, into a staging directory
  - Overlay caller-supplied files
  - Materialize the staging directory with mke2fs/resize2fs
"""

import logging

__version__ = "0.2.0"
__description__ = "Build ext4 root filesystem images from OCI container images"

# Library logging is silent unless the application configures handlers.
logging.getLogger(__name__).addHandler(logging.NullHandler())

from ocirootfs.core.coordinator import RootfsBuild  # noqa: E402
from ocirootfs.models.build import BuildOptions, BuildOptionsBuilder, BuildState  # noqa: E402
from ocirootfs.models.reference import ImageReference  # noqa: E402

__all__ = [
    "RootfsBuild",
    "BuildOptions",
    "BuildOptionsBuilder",
    "BuildState",
    "ImageReference",
    "__version__",
]
