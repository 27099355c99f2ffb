import copy

import pytest

from config import DEFAULTS
from db import make_engine
from helpers import BASE


@pytest.fixture
def cfg():
    c = copy.deepcopy(DEFAULTS)
    c["remote"]["baseUrl"] = BASE
    c["remote"]["retry"] = {"maxAttempts": 3, "baseDelay": 0, "maxDelay": 0}
    c["remote"]["deadline"] = 5
    return c


@pytest.fixture
def engine(tmp_path):
    return make_engine(f"sqlite:///{tmp_path / 'labsync_test.db'}")
