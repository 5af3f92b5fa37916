# All types a user would care about are made available in the top level package.
# A user should never have to import anything from sub modules.

from .exceptions import *  # noqa: F403 public API
from .resources import *  # noqa: F403 public API
from .handlers import *  # noqa: F403 public API
from .tasks import Lifecycle, Task
from .cache import *  # noqa: F403 public API
from .workqueue import *  # noqa: F403 public API
from .dynamic import *  # noqa: F403 public API
from .discovery import *  # noqa: F403 public API
from .scheme import *  # noqa: F403 public API
from .apply import *  # noqa: F403 public API
from .connection import *  # noqa: F403 public API
