import os
import warnings

# Ignore warnings from app.shared
warnings.filterwarnings("ignore", category=DeprecationWarning, module="app.shared.*")

# Set test environment variables
os.environ.update(
    {
        "DEBUG": "true",
        "DEFAULT_STREAM_ID": "main-stream",
        "LOGFIRE_ENABLE": "false",
    }
)

from tests.fixtures.relay_fixtures import *  # noqa: E402, F403
from tests.fixtures.transport_fixtures import *  # noqa: E402, F403
