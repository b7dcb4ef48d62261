# -*- coding: utf-8 -*-
# === 保证能正确 import f1hub（未 pip install -e 时也能跑） ===
import datetime
import os
import sys

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import pytest

from f1hub.categorizer import Categorizer


def utc_ms(year, month, day, hour=12, minute=0):
    dt = datetime.datetime(year, month, day, hour, minute, tzinfo=datetime.timezone.utc)
    return int(dt.timestamp() * 1000)


# 2025-01-07 是周二，2025-01-10 是周五（UTC）
TUESDAY_NOON = utc_ms(2025, 1, 7)
FRIDAY_NOON = utc_ms(2025, 1, 10)


@pytest.fixture
def categorizer():
    return Categorizer.from_yaml()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "f1hub_test.db"
