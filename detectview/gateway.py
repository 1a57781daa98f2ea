"""
Model Gateway: a uniform load/infer/dispose interface over model backends.

Responsibility:
    Own the mapping from model family to backend factory, wrap each
    loaded backend in a disposable ModelHandle, and run the blocking
    load and inference calls on a worker thread so the event loop stays
    responsive.

Constraints:
    - At most one inference call may be in flight per handle. A second
      concurrent call fails with HandleBusyError.
    - ``infer`` must not race ``dispose`` on the same handle; callers
      serialize them (``wait_idle`` helps).
    - Handle bookkeeping (busy flag, idle event) is only touched on the
      event loop thread. Worker threads only see the backend call.

Non-goals:
    - No model caching or sharing between handles.
    - No timeouts on load or inference.
"""

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Mapping, Optional

import numpy as np

from detectview.backends import DEFAULT_BACKENDS, DetectorBackend
from detectview.errors import (
    HandleBusyError,
    HandleDisposedError,
    InferenceError,
    ModelLoadError,
)
from detectview.families import ModelCapabilities, ModelFamily, describe

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Mapping[str, Any]], DetectorBackend]


class ModelHandle:
    """Opaque, disposable reference to a loaded model.

    Attributes:
        handle_id: Unique id within the gateway that created it.
        family: Model family of the loaded model.
        capabilities: Static metadata for the family.
    """

    def __init__(
        self,
        handle_id: int,
        family: ModelFamily,
        capabilities: ModelCapabilities,
        backend: DetectorBackend,
    ) -> None:
        self.handle_id = handle_id
        self.family = family
        self.capabilities = capabilities
        self._backend: Optional[DetectorBackend] = backend
        self._busy = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def disposed(self) -> bool:
        return self._backend is None

    @property
    def busy(self) -> bool:
        return self._busy

    def __repr__(self) -> str:
        state = "disposed" if self.disposed else ("busy" if self._busy else "ready")
        return f"<ModelHandle #{self.handle_id} {self.family.value} {state}>"


class ModelGateway:
    """Uniform interface over heterogeneous model backends.

    Usage:
        gateway = ModelGateway()
        handle = await gateway.load("general-detector", options)
        raw = await gateway.infer(handle, frame)
        gateway.dispose(handle)

    Tests and embedders replace backends through ``register`` or the
    ``backends`` constructor argument.
    """

    def __init__(self, backends: Optional[Mapping[Any, BackendFactory]] = None) -> None:
        if backends is None:
            backends = DEFAULT_BACKENDS
        self._backends: Dict[ModelFamily, BackendFactory] = {
            ModelFamily.parse(family): factory for family, factory in backends.items()
        }
        self._ids = itertools.count(1)

    def register(self, family, factory: BackendFactory) -> None:
        """Register (or replace) the backend factory for a family."""
        self._backends[ModelFamily.parse(family)] = factory

    @staticmethod
    def describe(family) -> ModelCapabilities:
        """Return the static capabilities of a family (pure lookup)."""
        return describe(family)

    async def load(self, family, options: Optional[Mapping[str, Any]] = None) -> ModelHandle:
        """Load a model and return a handle to it.

        Args:
            family: Model family tag.
            options: Backend options (file paths, compute backend, ...).

        Raises:
            ModelLoadError: If the family is unrecognized, has no backend,
                            a required option is missing, or the backend
                            rejects the load.
        """
        try:
            family = ModelFamily.parse(family)
        except ValueError as e:
            raise ModelLoadError(family, str(e), cause=e, reason="unsupported_family") from e

        factory = self._backends.get(family)
        if factory is None:
            raise ModelLoadError(
                family, "no backend is registered for this family",
                reason="unsupported_family",
            )

        logger.info("Loading %s model...", family.value)
        try:
            backend = await asyncio.to_thread(factory, dict(options or {}))
        except ModelLoadError:
            raise
        except Exception as e:
            raise ModelLoadError(family, str(e), cause=e) from e

        handle = ModelHandle(next(self._ids), family, describe(family), backend)
        logger.info("Model loaded: %r", handle)
        return handle

    async def infer(
        self,
        handle: ModelHandle,
        frame: np.ndarray,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Run one inference call and return the backend's raw output.

        Raises:
            HandleDisposedError: If the handle has been disposed.
            HandleBusyError: If an inference is already in flight on it.
            InferenceError: If the backend call fails.
        """
        backend = handle._backend
        if backend is None:
            raise HandleDisposedError(
                f"Model handle #{handle.handle_id} ({handle.family.value}) has been disposed."
            )
        if handle._busy:
            raise HandleBusyError(
                f"Model handle #{handle.handle_id} already has an inference in flight."
            )

        handle._busy = True
        handle._idle.clear()
        try:
            return await asyncio.to_thread(backend.detect, frame, dict(options or {}))
        except Exception as e:
            raise InferenceError(
                f"Inference failed on {handle.family.value} model: {e}"
            ) from e
        finally:
            handle._busy = False
            handle._idle.set()

    async def wait_idle(self, handle: ModelHandle) -> None:
        """Wait until no inference is in flight on the handle."""
        await handle._idle.wait()

    def dispose(self, handle: ModelHandle) -> None:
        """Release the handle's backend resources.

        Idempotent: disposing an already-disposed handle is a no-op.
        """
        backend = handle._backend
        if backend is None:
            logger.debug("Handle #%d already disposed.", handle.handle_id)
            return

        handle._backend = None
        try:
            backend.close()
        except Exception:
            logger.warning(
                "Error while releasing model handle #%d", handle.handle_id, exc_info=True
            )
        logger.info("Model handle #%d (%s) disposed.", handle.handle_id, handle.family.value)
