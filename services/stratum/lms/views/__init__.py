"""Export surface for lms.views.

Endpoints live in submodules by concern:
- lms.views.auth
- lms.views.instructor
- lms.views.student
- lms.views.notifications
- lms.views.media
- lms.views.internal
"""

from .auth import *  # noqa: F401,F403
from .instructor import *  # noqa: F401,F403
from .internal import *  # noqa: F401,F403
from .media import *  # noqa: F401,F403
from .notifications import *  # noqa: F401,F403
from .student import *  # noqa: F401,F403
