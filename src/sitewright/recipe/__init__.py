"""Recipes: bindings, commands, execution, binding discovery and the runner."""

from sitewright.recipe.bindings import PageBindings, StateCondition, merge_bindings, validate_bindings
from sitewright.recipe.commands import Recipe, RecipeConfig
from sitewright.recipe.executor import BindingFixRequest, ExecutionResult, ExtractedItem, RecipeExecutor, execute
from sitewright.recipe.loader import get_recipe, load_recipe_from_file, load_recipes_from_dir
from sitewright.recipe.navigator import Navigator, normalize_bindings
from sitewright.recipe.runner import LLMContentParser, RecipeRunner, RunnerResult

__all__ = [
    "BindingFixRequest",
    "ExecutionResult",
    "ExtractedItem",
    "LLMContentParser",
    "Navigator",
    "PageBindings",
    "Recipe",
    "RecipeConfig",
    "RecipeExecutor",
    "RecipeRunner",
    "RunnerResult",
    "StateCondition",
    "execute",
    "get_recipe",
    "load_recipe_from_file",
    "load_recipes_from_dir",
    "merge_bindings",
    "normalize_bindings",
    "validate_bindings",
]
