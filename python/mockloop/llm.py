"""
OpenAI backend selection shared by the feedback, hint and vision clients.

Azure OpenAI is used when AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_KEY and
AZURE_OPENAI_DEPLOYMENT are all set (or OPENAI_API_TYPE=azure); otherwise the
standard OpenAI API with OPENAI_API_KEY. The environment, including ``.env``,
is loaded by ``mockloop.config``.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from openai import AsyncAzureOpenAI, AsyncOpenAI


logger = logging.getLogger(__name__)


DEFAULT_FEEDBACK_MODEL = "gpt-4o-2024-08-06"
DEFAULT_VISION_MODEL = "gpt-4o"
DEFAULT_AZURE_API_VERSION = "2024-08-01-preview"

_AZURE_VARS = ("AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_KEY", "AZURE_OPENAI_DEPLOYMENT")
_DEFAULT_MODELS = {
    "OPENAI_FEEDBACK_MODEL": DEFAULT_FEEDBACK_MODEL,
    "OPENAI_VISION_MODEL": DEFAULT_VISION_MODEL,
}


def _azure_settings() -> Optional[dict[str, str]]:
    values = {name: (os.environ.get(name) or "").strip() for name in _AZURE_VARS}
    wants_azure = os.environ.get("OPENAI_API_TYPE", "").lower() == "azure"
    if not wants_azure and not all(values.values()):
        return None
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ValueError(f"Azure OpenAI is selected but {', '.join(missing)} is not set")
    return values


def get_openai_config(model_env: str = "OPENAI_FEEDBACK_MODEL") -> tuple[str, Optional[AsyncAzureOpenAI]]:
    """
    Return ``(model, azure_client)`` for the configured backend.

    With Azure the deployment name is the model and a client is returned;
    with OpenAI the model comes from ``model_env`` and the client is None, so
    callers fall back to the SDK default.
    """
    azure = _azure_settings()
    if azure is None:
        model = os.environ.get(model_env) or _DEFAULT_MODELS.get(model_env, DEFAULT_FEEDBACK_MODEL)
        logger.info("OpenAI backend, model %s (%s)", model, model_env)
        return model, None

    deployment = azure["AZURE_OPENAI_DEPLOYMENT"]
    logger.info("Azure OpenAI backend at %s, deployment %s", azure["AZURE_OPENAI_ENDPOINT"], deployment)
    client = AsyncAzureOpenAI(
        azure_endpoint=azure["AZURE_OPENAI_ENDPOINT"],
        api_key=azure["AZURE_OPENAI_KEY"],
        api_version=os.environ.get("AZURE_OPENAI_API_VERSION", DEFAULT_AZURE_API_VERSION),
    )
    return deployment, client


def build_async_client(azure_client: Optional[AsyncAzureOpenAI] = None) -> AsyncOpenAI:
    """The Azure client when configured, else a standard client from OPENAI_API_KEY."""
    if azure_client is not None:
        return azure_client
    if not os.environ.get("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY is not set and Azure OpenAI is not configured; model calls will fail")
    return AsyncOpenAI()
