import os
import warnings

warnings.filterwarnings("ignore", category=DeprecationWarning)

# Test environment, applied before livestate reads its configuration
os.environ.update(
    {
        "DEBUG": "true",
        "RECONCILE_MODE": "off",
        "LOGFIRE_ENABLE": "false",
    }
)

from tests.fixtures.livekit_fixtures import *  # noqa: E402, F403
from tests.fixtures.redis_fixtures import *  # noqa: E402, F403
from tests.fixtures.runtime_fixtures import *  # noqa: E402, F403
