"""
Check that the Sphinx API pages document every public module.
"""

import importlib
import os
import re
import sys

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)
import torch_dmat

DOCS = os.path.join(ROOT, 'docs', 'source')


def documented_modules():
    modules = []
    for name in sorted(os.listdir(os.path.join(DOCS, 'api'))):
        with open(os.path.join(DOCS, 'api', name)) as f:
            modules += re.findall(r'^\.\. automodule:: (\S+)', f.read(), flags=re.M)
    return modules


def test_every_module_is_documented():
    package_dir = os.path.dirname(torch_dmat.__file__)
    public = {
        f"torch_dmat.{name[:-3]}" for name in os.listdir(package_dir)
        if name.endswith('.py') and not name.startswith('_')
    }
    assert public <= set(documented_modules())


@pytest.mark.parametrize('module', documented_modules())
def test_documented_module_imports(module):
    assert importlib.import_module(module).__name__ == module


def test_index_lists_every_page():
    with open(os.path.join(DOCS, 'index.rst')) as f:
        index = f.read()
    for name in os.listdir(os.path.join(DOCS, 'api')):
        assert f"api/{name[:-4]}" in index
