import json
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote, urlsplit

import httpx

from suite_runner.config import settings
from suite_runner.errors import InvocationError, OrchestrationError
from suite_runner.llm import CompletionProvider, CompletionRequest, provider_default_model
from suite_runner.logging import get_logger
from suite_runner.models import (
    AuthType,
    EndpointTarget,
    ModelOverride,
    PromptTarget,
    Target,
)

logger = get_logger(__name__)

_ARRAY_PART = re.compile(r"^(\w+)\[(\d+)\]$")


@dataclass
class Invocation:
    output: str
    response_time_ms: int


class TargetInvoker(Protocol):
    def validate(self) -> None: ...

    async def invoke(self, inputs: Mapping[str, str]) -> Invocation: ...


def _escape_json_string(value: str) -> str:
    # json.dumps adds surrounding quotes; the template already has them
    return json.dumps(value, ensure_ascii=False)[1:-1]


def render_template(
    template: str, variables: Mapping[str, str], escape_for_json: bool = False
) -> str:
    result = template
    for key, value in variables.items():
        replacement = _escape_json_string(value) if escape_for_json else value
        pattern = re.compile(r"\{\{\s*" + re.escape(key) + r"\s*\}\}")
        result = pattern.sub(lambda _: replacement, result)
    return result


def get_value_by_path(obj: Any, path: str) -> Any:
    if not path:
        return obj
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        array_match = _ARRAY_PART.match(part)
        if array_match:
            key, index = array_match.group(1), int(array_match.group(2))
            current = current.get(key)
            if not isinstance(current, list) or index >= len(current):
                return None
            current = current[index]
        else:
            current = current.get(part)
    return current


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class PromptInvoker:
    def __init__(
        self,
        target: PromptTarget,
        providers: Mapping[str, CompletionProvider],
        model_override: ModelOverride | None = None,
    ) -> None:
        self.target = target
        self.providers = providers
        self.provider_name = model_override.provider if model_override else target.provider
        requested = model_override.model if model_override else target.model
        fallback = provider_default_model(providers.get(self.provider_name), settings.default_model)
        self.model = requested or fallback

    def validate(self) -> None:
        provider = self.providers.get(self.provider_name)
        if provider is None:
            raise OrchestrationError(f"Unknown LLM provider: {self.provider_name}")
        if not provider.is_configured():
            raise OrchestrationError(f"No credentials configured for provider '{self.provider_name}'")

    async def invoke(self, inputs: Mapping[str, str]) -> Invocation:
        request = CompletionRequest(
            model=self.model,
            user_message=render_template(self.target.content, inputs),
            system_prompt=(
                render_template(self.target.system_prompt, inputs)
                if self.target.system_prompt
                else None
            ),
            temperature=self.target.temperature,
            max_tokens=self.target.max_tokens,
        )
        start = time.monotonic()
        try:
            output = await self.providers[self.provider_name].complete(request)
        except Exception as e:
            raise InvocationError(f"{type(e).__name__}: {e}") from e
        return Invocation(output=output, response_time_ms=_elapsed_ms(start))


class EndpointInvoker:
    def __init__(self, target: EndpointTarget, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.target = target
        self.transport = transport

    def validate(self) -> None:
        try:
            parts = urlsplit(self.target.url)
            host = parts.hostname
        except ValueError as e:
            raise OrchestrationError(f"Invalid endpoint URL {self.target.url!r}: {e}") from e
        if parts.scheme not in ("http", "https"):
            raise OrchestrationError(f"Endpoint URL must be http(s), got: {self.target.url!r}")
        if not host:
            raise OrchestrationError(f"Endpoint URL has no host: {self.target.url!r}")
        auth = self.target.auth
        if auth.type == AuthType.bearer and not auth.token:
            raise OrchestrationError("Bearer auth configured without a token")
        if auth.type == AuthType.api_key and not (auth.api_key_header and auth.api_key):
            raise OrchestrationError("API key auth requires both a header name and a key")
        if auth.type == AuthType.basic and not (auth.username and auth.password):
            raise OrchestrationError("Basic auth requires a username and a password")

    def build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": self.target.content_type, **self.target.headers}
        auth = self.target.auth
        if auth.type == AuthType.bearer:
            headers["Authorization"] = f"Bearer {auth.token}"
        elif auth.type == AuthType.api_key:
            headers[auth.api_key_header] = auth.api_key
        return headers

    def build_body(self, inputs: Mapping[str, str]) -> str | None:
        if self.target.method not in ("POST", "PUT", "PATCH") or not self.target.body_template:
            return None
        is_json = "application/json" in self.target.content_type
        return render_template(self.target.body_template, inputs, escape_for_json=is_json)

    def extract_output(self, response: httpx.Response) -> str:
        body: Any = response.text
        if "application/json" in response.headers.get("content-type", ""):
            try:
                body = response.json()
            except ValueError:
                body = response.text
        if self.target.response_content_path and isinstance(body, (dict, list)):
            body = get_value_by_path(body, self.target.response_content_path)
        if isinstance(body, str):
            return body
        return json.dumps(body, indent=2)

    async def invoke(self, inputs: Mapping[str, str]) -> Invocation:
        url = render_template(self.target.url, {k: quote(v, safe="") for k, v in inputs.items()})
        auth = None
        if self.target.auth.type == AuthType.basic:
            auth = httpx.BasicAuth(self.target.auth.username, self.target.auth.password)

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.target.timeout_s, transport=self.transport) as client:
                response = await client.request(
                    self.target.method,
                    url,
                    headers=self.build_headers(),
                    content=self.build_body(inputs),
                    auth=auth,
                )
        except httpx.TimeoutException as e:
            raise InvocationError(f"Request timed out after {self.target.timeout_s}s") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise InvocationError(f"{type(e).__name__}: {e}") from e
        elapsed = _elapsed_ms(start)

        if not response.is_success:
            raise InvocationError(f"HTTP {response.status_code} {response.reason_phrase}: {response.text}")
        return Invocation(output=self.extract_output(response), response_time_ms=elapsed)


def build_invoker(
    target: Target,
    providers: Mapping[str, CompletionProvider],
    model_override: ModelOverride | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PromptInvoker | EndpointInvoker:
    if isinstance(target, PromptTarget):
        return PromptInvoker(target, providers, model_override)
    if model_override is not None:
        logger.info("Model override ignored for endpoint target")
    return EndpointInvoker(target, transport)
