# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Project information -----------------------------------------------------

project = 'mkbubble'
copyright = '2025, mkbubble authors'
author = 'mkbubble authors'
release = '0.1.0'

import os
import sys
sys.path.insert(0, os.path.abspath(".."))

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",           # pull docstrings from bubble_pack / mkbubble_cli
    "sphinx.ext.autosummary",
    "sphinx_autodoc_typehints",
    "myst_parser",                  # index.md
    "sphinx.ext.napoleon",          # Google-style Args/Raises sections
]
autosummary_generate = True

source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}
root_doc = "index"

exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store']

# -- Options for HTML output -------------------------------------------------

html_theme = "sphinx_rtd_theme"
