from __future__ import annotations

from specflow.errors import PluginError
from specflow.plugins.registry import PluginRegistry
from specflow.plugins.types import (
    TEMPLATE_CATEGORIES,
    RegisteredTemplate,
    SpecSubType,
    TemplateCategory,
    TemplateRegistration,
)

SPEC_SUB_TYPES = ("requirements", "design", "tasks")


class TemplateExtension:
    def __init__(self, registry: PluginRegistry) -> None:
        self.registry = registry

    def register_template(
        self, plugin_name: str, registration: TemplateRegistration
    ) -> RegisteredTemplate:
        if registration.category not in TEMPLATE_CATEGORIES:
            raise PluginError(
                f"Unknown template category: {registration.category}", plugin_name=plugin_name
            )
        if registration.sub_type is not None:
            if registration.category != "spec":
                raise PluginError(
                    "Only spec templates may declare a sub type", plugin_name=plugin_name
                )
            if registration.sub_type not in SPEC_SUB_TYPES:
                raise PluginError(
                    f"Unknown spec template sub type: {registration.sub_type}",
                    plugin_name=plugin_name,
                )
        return self.registry.register_template(plugin_name, registration)

    def templates_by_category(self, category: TemplateCategory) -> list[RegisteredTemplate]:
        return self.registry.get_templates(category)

    def template_by_name(self, namespaced_name: str) -> RegisteredTemplate | None:
        return self.registry.get_template(namespaced_name)

    def all_templates(self) -> list[RegisteredTemplate]:
        return self.registry.get_templates()

    def spec_templates_by_sub_type(self, sub_type: SpecSubType) -> list[RegisteredTemplate]:
        return [
            entry
            for entry in self.registry.get_templates("spec")
            if entry.registration.sub_type == sub_type
        ]
