"""
HTTP capability invoker - runs a step by POSTing it to a capability service
"""
import requests
from typing import Dict, Any
import logging
import os

from stepflow.pipeline.models import CapabilityRequest, CapabilityResponse
from stepflow.utils.exceptions import CapabilityAPIError, InvocationError
from stepflow.utils.retry import exponential_backoff_with_jitter

logger = logging.getLogger(__name__)


class HttpCapabilityInvoker:
    """
    Capability invoker backed by a JSON-over-HTTP service.

    Request body:
        {"step_name", "skill", "agent", "input", "timeout_ms",
         "pipeline_id", "pipeline_name"}

    Expected response body:
        {"output", "model", "input_tokens", "output_tokens",
         "thinking_tokens", "estimated_cost_usd"}

    Transient failures are retried here, inside the invoker. The engine
    itself never retries a step, and its own timeout still bounds the
    total time spent across attempts.
    """

    def __init__(self, config: Dict[str, Any]):
        self.endpoint = config.get("endpoint", "http://localhost:8080/invoke")
        # Try environment variable first, then config
        self.api_key = os.getenv("CAPABILITY_API_KEY") or config.get("api_key", "")
        self.max_retries = config.get("max_retries", 2)
        self.base_delay = config.get("retry_base_delay", 1.0)
        self.session = requests.Session()

        self._post = exponential_backoff_with_jitter(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            retriable_exceptions=(CapabilityAPIError,),
        )(self._post_once)

    def __call__(self, request: CapabilityRequest) -> CapabilityResponse:
        """
        Invoke the remote capability for one step

        Args:
            request: Step request built by the engine

        Returns:
            CapabilityResponse parsed from the service reply

        Raises:
            CapabilityAPIError: Service unreachable or failing (after retries)
            InvocationError: Service rejected the request or replied with garbage
        """
        payload = {
            "step_name": request.step_name,
            "skill": request.skill,
            "agent": request.agent,
            "input": request.input,
            "timeout_ms": request.timeout_ms,
            "pipeline_id": request.pipeline_id,
            "pipeline_name": request.pipeline_name,
        }
        body = self._post(payload, request.timeout_ms / 1000)
        return CapabilityResponse.coerce(body)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post_once(self, payload: Dict[str, Any], timeout_seconds: float) -> Dict[str, Any]:
        step_name = payload["step_name"]
        try:
            response = self.session.post(
                self.endpoint,
                headers=self._headers(),
                json=payload,
                timeout=timeout_seconds,
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Capability call for {step_name} timed out after {timeout_seconds}s: {e}")
            raise CapabilityAPIError(f"Capability call timed out after {timeout_seconds}s", endpoint=self.endpoint)
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Capability connection error for {step_name}: {e}")
            raise CapabilityAPIError(f"Failed to connect to capability service: {e}", endpoint=self.endpoint)
        except requests.exceptions.RequestException as e:
            logger.error(f"Capability request error for {step_name}: {e}")
            raise CapabilityAPIError(f"Capability request failed: {e}", endpoint=self.endpoint)

        # Handle HTTP errors with proper categorization
        if response.status_code == 429:
            raise CapabilityAPIError("Rate limit exceeded", status_code=429, endpoint=self.endpoint)
        if response.status_code >= 500:
            raise CapabilityAPIError(
                "Capability server error", status_code=response.status_code, endpoint=self.endpoint
            )
        if response.status_code >= 400:
            detail = _error_detail(response)
            # Client errors will not succeed on retry
            raise InvocationError(
                f"Capability rejected step {step_name} (HTTP {response.status_code}): {detail}",
                step_name=step_name,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise InvocationError(f"Capability returned invalid JSON: {e}", step_name=step_name) from e

        if not isinstance(body, dict):
            raise InvocationError(f"Capability returned {type(body).__name__}, expected an object", step_name=step_name)

        logger.info(f"Capability call successful for {step_name} (model={body.get('model')})")
        return body


def _error_detail(response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] if response.text else ""
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message", "")
        if error:
            return str(error)
    return ""
