"""
Build recipes: parsing, rendering, structural checks and templates.
"""

from .base import BuildRecipe, CopyOp, Instruction, Stage
from .dockerfile import check_recipe, expand_vars, parse_recipe, render_recipe
from .templates import RecipeTemplate, get_template, list_templates, select_template

__all__ = [
    "BuildRecipe",
    "CopyOp",
    "Instruction",
    "Stage",
    "check_recipe",
    "expand_vars",
    "parse_recipe",
    "render_recipe",
    "RecipeTemplate",
    "get_template",
    "list_templates",
    "select_template",
]
