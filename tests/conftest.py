import pytest
import turbinedat
from datbuilder import DatBuilder

@pytest.fixture
def portal():
    return DatBuilder(turbinedat.PORTAL)

@pytest.fixture
def cell():
    return DatBuilder(turbinedat.CELL)

@pytest.fixture
def write_dat(tmp_path):
    def write(builder: DatBuilder, name: str):
        path = tmp_path / name
        path.write_bytes(builder.build())
        return str(path)

    return write
