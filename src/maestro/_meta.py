""" Application's metadata

"""

from importlib.metadata import version
from typing import Final

from packaging.version import Version

__version__: str = version("maestro-orchestrator")


APP_NAME: Final[str] = "maestro"
VERSION: Final[Version] = Version(__version__)


APP_STARTED_BANNER_MSG = rf"""
                              _
 _ __ ___   __ _  ___  ___| |_ _ __ ___
| '_ ` _ \ / _` |/ _ \/ __| __| '__/ _ \
| | | | | | (_| |  __/\__ \ |_| | | (_) |
|_| |_| |_|\__,_|\___||___/\__|_|  \___/   v{__version__}
"""


APP_FINISHED_BANNER_MSG = "{:=^100}".format(
    f"🎉 App {APP_NAME}=={VERSION} shutdown completed 🎉"
)
