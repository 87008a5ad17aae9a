"""
MLflow tracking of chat turns.

One MLflow run per turn served by the API. Runs are created through
MlflowClient with explicit run ids, so concurrent turns never share the
fluent API's active-run stack.
"""

import logging
from typing import Optional

import mlflow
from mlflow.tracking import MlflowClient

from sia_qualifier.models.messages import Finish
from sia_qualifier.models.schemas import TurnSettings

logger = logging.getLogger(__name__)


class TurnTracker:
    def __init__(self, enabled: bool, tracking_uri: str, experiment_name: str):
        self.enabled = enabled
        self.tracking_uri = tracking_uri
        self.experiment_name = experiment_name
        self.experiment_id: Optional[str] = None
        self.client: Optional[MlflowClient] = None

    def setup(self) -> None:
        """Point MLflow at the tracking store and make sure the experiment exists."""
        if not self.enabled:
            logger.info("MLflow tracking disabled")
            return
        try:
            mlflow.set_tracking_uri(self.tracking_uri)
            experiment = mlflow.set_experiment(self.experiment_name)
            self.experiment_id = experiment.experiment_id
            self.client = MlflowClient(tracking_uri=self.tracking_uri)
            logger.info(f"MLflow tracking: {self.tracking_uri} (experiment {self.experiment_name})")
        except Exception as e:
            logger.error(f"MLflow setup failed, tracking disabled: {e}", exc_info=True)
            self.client = None

    def record_turn(
        self,
        conversation_id: str,
        turn_settings: TurnSettings,
        latency_seconds: float,
        finish: Optional[Finish] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log one turn. Tracking failures are logged and swallowed."""
        if self.client is None:
            return
        try:
            run = self.client.create_run(self.experiment_id, run_name=f"chat_{conversation_id}")
            run_id = run.info.run_id

            self.client.log_param(run_id, "model", turn_settings.model)
            self.client.log_param(run_id, "temperature", turn_settings.temperature)
            self.client.log_param(run_id, "top_p", turn_settings.top_p)
            self.client.log_param(run_id, "conversation_id", conversation_id)

            self.client.log_metric(run_id, "response_time_seconds", latency_seconds)
            if finish is not None:
                self.client.log_param(run_id, "finish_reason", finish.finish_reason)
                self.client.log_metric(run_id, "steps", finish.steps)
                self.client.log_metric(run_id, "prompt_tokens", finish.usage.prompt)
                self.client.log_metric(run_id, "completion_tokens", finish.usage.completion)
                self.client.log_metric(run_id, "total_tokens", finish.usage.total)
                self.client.log_metric(run_id, "reasoning_tokens", finish.usage.reasoning)
            if error:
                self.client.set_tag(run_id, "error", error)

            self.client.set_terminated(run_id, status="FAILED" if error else "FINISHED")
        except Exception as e:
            logger.warning(f"MLflow tracking failed for {conversation_id}: {e}")
