#
# _version.py: sentinel_tools package version
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#

__version_info__ = (0, 3, 0)
__version__ = ".".join(map(str, __version_info__))
