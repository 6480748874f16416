"""
Entrypoint: start the rollout controller and serve the health/action API.
"""
import logging
import os

# Load the optional env file before settings are read
from dotenv import load_dotenv

load_dotenv(os.getenv("ROLLOUTS_ENV_FILE", "rollouts.env"))

import uvicorn

from rollout_controller import api
from rollout_controller.config import settings
from rollout_controller.controller import RolloutController
from rollout_controller.kube_client import KubeClient

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"🚀 Starting {settings.APP_NAME} ({settings.APP_ENV})")

    client = KubeClient(in_cluster=settings.K8S_IN_CLUSTER, context=settings.K8S_CONTEXT)
    controller = RolloutController(client, settings)
    api.configure(client, controller)

    controller.start()
    try:
        uvicorn.run(api.app, host="0.0.0.0", port=settings.HTTP_PORT)
    finally:
        controller.stop()


if __name__ == "__main__":
    main()
