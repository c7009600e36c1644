# workaround for ruff removing fixture imports
# they look unused because of dependency injection by pytest
from test_fixtures import *  # noqa


def pytest_addoption(parser):
    parser.addoption(
        "--symvm-options",
        metavar="OPTIONS",
        default="",
        help="symvm config overrides, e.g. 'loop=3,strategy=coverage-guided'",
    )
