"""Registry mapping a job kind to the per-item work it runs."""

import asyncio
import hashlib
from typing import Any, Callable, Dict, List

from jobengine.core.errors import UnknownWorkflowError
from jobengine.services.generation import get_adapter
from jobengine.services.jobs import WorkFn

WorkflowFactory = Callable[[Dict[str, Any]], WorkFn]

_workflows: Dict[str, WorkflowFactory] = {}


def register_workflow(kind: str, factory: WorkflowFactory) -> None:
    _workflows[kind] = factory


def registered_kinds() -> List[str]:
    return sorted(_workflows)


def resolve_workflow(kind: str, payload: Dict[str, Any]) -> WorkFn:
    """Build the work closure for ``kind``; ValueError means a bad payload."""
    factory = _workflows.get(kind)
    if factory is None:
        raise UnknownWorkflowError(kind)
    return factory(payload)


def simulate_workflow(payload: Dict[str, Any]) -> WorkFn:
    delay = max(0.0, float(payload.get("simulate_ms", 0)) / 1000.0)
    fail_indexes = {int(index) for index in payload.get("fail_indexes", [])}

    async def work(index: int) -> Dict[str, Any]:
        if delay > 0:
            await asyncio.sleep(delay)
        if index in fail_indexes:
            raise RuntimeError(f"simulated failure for item {index}")
        return {"item": index}

    return work


def generation_batch_workflow(payload: Dict[str, Any]) -> WorkFn:
    prompts = payload.get("prompts") or []
    if payload.get("prompt"):
        prompts = [payload["prompt"], *prompts]
    if not prompts or not all(isinstance(prompt, str) for prompt in prompts):
        raise ValueError("payload.prompts must be a non-empty list of strings")
    options = payload.get("options") or {}
    if not isinstance(options, dict):
        raise ValueError("payload.options must be an object")
    adapter = get_adapter()

    async def work(index: int) -> Dict[str, Any]:
        request = {**options, "prompt": prompts[index % len(prompts)]}
        result = await adapter.generate(request)
        generated = result.unwrap()
        return {
            "mime_type": generated.mime_type,
            "size": len(generated.data),
            "sha256": hashlib.sha256(generated.data).hexdigest(),
            "attempts": result.attempts,
        }

    return work


register_workflow("demo.simulate", simulate_workflow)
register_workflow("generation.batch", generation_batch_workflow)
