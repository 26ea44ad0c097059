import os
import sys

# Sphinx configuration for the tapegrad API reference.
# Docstrings are Google style with $$ math blocks, rendered by napoleon and sphinx_math_dollar.

sys.path.insert(0, os.path.abspath(".."))

project = "tapegrad"
copyright = "2025, tapegrad contributors"
author = "tapegrad contributors"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",
    "sphinx.ext.mathjax",
    "sphinx_math_dollar",
]

autodoc_member_order = "bysource"
# cupy is only needed by the GPU backend
autodoc_mock_imports = ["cupy"]
autosummary_generate = True
napoleon_google_docstring = True
napoleon_use_rtype = False
pygments_style = "sphinx"
exclude_patterns = ["_build", "Thumbs.db", ".DS_Store", ".venv"]

html_theme = "alabaster"
