import sys
from pathlib import Path

import pytest

# Make cfgdiff.py and svcdiff.py importable without installing the project
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def restore_logger():
    import cfgdiff

    level = cfgdiff.logger.level
    yield cfgdiff.logger
    for handler in list(cfgdiff.logger.handlers):
        cfgdiff.logger.removeHandler(handler)
        handler.close()
    cfgdiff.logger.setLevel(level)
