"""Sets global version values"""

import platform

__version__ = "1.0.0"

USER_AGENT = "Mozilla/5.0 (({0} {1})) dmarcworker/{2}".format(
    platform.system(), platform.release(), __version__
)
