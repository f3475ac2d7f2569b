import pathlib

import pytest

from omstore.config import config


@pytest.fixture(params=[str, pathlib.Path])
def path_type(request):
    return request.param


@pytest.fixture(params=[1, 4], ids=["serial", "pool"])
def max_workers(request):
    with config.set({"threading.max_workers": request.param}):
        yield request.param


@pytest.fixture
def array_path(tmp_path, path_type):
    return path_type(tmp_path / "data.om")
