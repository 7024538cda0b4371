# -*- coding: utf-8 -*-

import os
import sys

sys.path.insert(0, os.path.abspath("../src"))

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.doctest",
    "sphinx.ext.coverage",
]

templates_path = ["_templates"]
source_suffix = ".rst"
master_doc = "modules"
add_function_parentheses = True

project = "Fleet Diagnostics Library"
copyright = "Fleet Diagnostics Team"

version = "0.1.0"
release = version

# -- Options for HTML output

html_theme = "sphinx_rtd_theme"
html_title = "Fleet Diagnostics Library"
html_theme_options = {
    "display_version": True,
}
html_domain_indices = False
html_use_index = False
html_show_sphinx = False
htmlhelp_basename = "FleetDiagLibDoc"
html_show_sourcelink = False
# unit tests are not part of the API reference
exclude_patterns = ["tests*.rst"]


def skip(app, what, name, obj, would_skip, options):
    if name == "__init__":
        return False
    return would_skip


def setup(app):
    app.connect("autodoc-skip-member", skip)
