"""Prompt templates that steer server-side summarization."""

import logging
from typing import Any

from pydantic import TypeAdapter

from recordsync.models.schemas import DefaultTemplateResponse, PromptTemplate, PromptTemplateRequest
from recordsync.services.errors import NetworkServiceError, TemplateNotEditable
from recordsync.services.events import EventChannel
from recordsync.services.http_client import HTTPClient

logger = logging.getLogger(__name__)

TEMPLATES_PATH = "/prompt-templates"

_TEMPLATE_LIST = TypeAdapter(list[PromptTemplate])


class PromptTemplateManager:
    """Holds the user's prompt templates and the current default.

    Templates are loaded lazily through :meth:`ensure_loaded`. Uploads that
    do not name a template use :attr:`default_template`.
    """

    def __init__(self, http: HTTPClient, events: EventChannel | None = None):
        self.http = http
        self.events = events or EventChannel("templates")
        self.templates: list[PromptTemplate] = []
        self.default_template: PromptTemplate | None = None
        self.error_message: str | None = None
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def _publish(self, reason: str) -> None:
        self.events.publish({
            "type": "templates",
            "reason": reason,
            "count": len(self.templates),
            "default_template_id": self.default_template.id if self.default_template else None,
        })

    async def _request(self, action: str, method: str, path: str, **kwargs) -> Any:
        self.error_message = None
        try:
            return await self.http.request(method, path, requires_auth=True, **kwargs)
        except NetworkServiceError as e:
            self.error_message = f"Could not {action}: {e}"
            logger.error(f"Template {action} failed: {e}")
            raise

    # --- Queries ---

    def get(self, template_id: int) -> PromptTemplate | None:
        return next((t for t in self.templates if t.id == template_id), None)

    def system_templates(self) -> list[PromptTemplate]:
        return [t for t in self.templates if t.is_system_template]

    def user_templates(self) -> list[PromptTemplate]:
        return [t for t in self.templates if not t.is_system_template]

    # --- Loading ---

    async def load(self) -> list[PromptTemplate]:
        templates = await self._request(
            "load templates", "GET", TEMPLATES_PATH, response_model=_TEMPLATE_LIST
        )
        self.templates = templates
        self.default_template = next((t for t in templates if t.is_user_default), None)
        self._loaded = True
        logger.info(f"Loaded {len(templates)} prompt templates")
        self._publish("load")
        return templates

    async def ensure_loaded(self) -> list[PromptTemplate]:
        if not self._loaded:
            await self.load()
        return self.templates

    async def load_default(self) -> PromptTemplate | None:
        """Ask the server for the default. Keeps the current one if that fails."""
        try:
            response = await self.http.request(
                "GET", f"{TEMPLATES_PATH}/default", requires_auth=True,
                response_model=DefaultTemplateResponse,
            )
        except NetworkServiceError as e:
            logger.error(f"Could not load default template: {e}")
            return self.default_template
        self.default_template = response.default_template
        return self.default_template

    # --- Mutations ---

    def _check_editable(self, template_id: int) -> None:
        template = self.get(template_id)
        if template is not None and template.is_system_template:
            raise TemplateNotEditable(f"System template {template.name!r} cannot be modified")

    async def create(self, name: str, prompt: str, description: str | None = None) -> PromptTemplate:
        body = PromptTemplateRequest(name=name, description=description, prompt=prompt)
        template = await self._request(
            "create template", "POST", TEMPLATES_PATH,
            json=body.model_dump(), response_model=PromptTemplate,
        )
        self.templates.append(template)
        logger.info(f"Created template {template.id}: {template.name}")
        self._publish("create")
        return template

    async def update(self, template_id: int, name: str, prompt: str,
                     description: str | None = None) -> PromptTemplate:
        self._check_editable(template_id)
        body = PromptTemplateRequest(name=name, description=description, prompt=prompt)
        template = await self._request(
            "update template", "PUT", f"{TEMPLATES_PATH}/{template_id}",
            json=body.model_dump(), response_model=PromptTemplate,
        )
        self.templates = [template if t.id == template_id else t for t in self.templates]
        if self.default_template and self.default_template.id == template_id:
            self.default_template = template
        self._publish("update")
        return template

    async def delete(self, template_id: int) -> None:
        self._check_editable(template_id)
        await self._request("delete template", "DELETE", f"{TEMPLATES_PATH}/{template_id}")
        self.templates = [t for t in self.templates if t.id != template_id]
        if self.default_template and self.default_template.id == template_id:
            self.default_template = None
            await self.load_default()
        logger.info(f"Deleted template {template_id}")
        self._publish("delete")

    async def set_default(self, template_id: int) -> PromptTemplate | None:
        await self._request(
            "set default template", "POST", f"{TEMPLATES_PATH}/{template_id}/set-default"
        )
        self.templates = [
            t.model_copy(update={"is_user_default": t.id == template_id}) for t in self.templates
        ]
        self.default_template = self.get(template_id)
        self._publish("default")
        return self.default_template

    def clear(self) -> None:
        """Forget everything; the next ``ensure_loaded`` fetches again."""
        self.templates = []
        self.default_template = None
        self.error_message = None
        self._loaded = False
