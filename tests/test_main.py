import argparse

import pytest

from main import parse_params


def test_parse_params_converts_integers():
    assert parse_params(["input=2", "value=-6", "band=low"]) == {"input": 2, "value": -6, "band": "low"}


def test_parse_params_requires_key_value():
    with pytest.raises(argparse.ArgumentTypeError):
        parse_params(["volume"])
