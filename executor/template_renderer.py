from jinja2 import Environment, BaseLoader, DebugUndefined, Template, TemplateSyntaxError, meta
from typing import Dict, Any, Set
import logging

logger = logging.getLogger("automation_engine")


class TemplateRenderer:
    """
    Renders `{{ contact.name }}` style placeholders inside action configs
    against the run context. Unknown placeholders are left verbatim so a
    dispatcher can still see what was intended.
    """

    def __init__(self):
        self.env = Environment(loader=BaseLoader(), undefined=DebugUndefined, autoescape=False)
        self._template_cache: Dict[str, Template] = {}

    def _get_template(self, template_str: str) -> Template:
        if template_str not in self._template_cache:
            self._template_cache[template_str] = self.env.from_string(template_str)
        return self._template_cache[template_str]

    def variables(self, template_str: str) -> Set[str]:
        """Top-level names a template refers to."""
        try:
            return meta.find_undeclared_variables(self.env.parse(template_str))
        except TemplateSyntaxError as e:
            logger.warning(f"Template validation failed: {e}")
            return set()

    def render(self, template_str: str, context: Dict[str, Any]) -> str:
        """Renders a string template with the provided context."""
        if not template_str or ("{{" not in template_str and "{%" not in template_str):
            return template_str
        try:
            return self._get_template(template_str).render(**context)
        except TemplateSyntaxError as e:
            logger.warning(f"Leaving unrenderable template as-is: {e}")
            return template_str

    def render_config(self, config: Any, context: Dict[str, Any]) -> Any:
        """Walks dicts and lists, rendering every string leaf."""
        if isinstance(config, str):
            return self.render(config, context)
        if isinstance(config, dict):
            return {k: self.render_config(v, context) for k, v in config.items()}
        if isinstance(config, list):
            return [self.render_config(v, context) for v in config]
        return config
