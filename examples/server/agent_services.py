#!/usr/bin/env python3
"""
Launch one of the payment-gated agent services.

  • ``prompt``  - Prompt Agent: paid prompt generation, mints a reward token
    of a randomly drawn tier to every paying caller.
  • ``image``   - Image Agent: paid image generation; buys its prompt from
    the Prompt Agent on the caller's behalf.
  • ``custody`` - signing oracle + broadcaster for agents configured with
    ``SIGNING_SERVICE_URL`` / ``BROADCAST_SERVICE_URL``.

Run with:

    uvicorn agent_services:prompt_app --factory --port 9100
    uvicorn agent_services:image_app --factory --port 9000
    uvicorn agent_services:custody_app --factory --port 9200

or ``python agent_services.py image`` (port from ``PORT``).

Settings are read from the environment and from the ``.env`` file in the
examples directory.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from fastapi import FastAPI

from agent_x402.agents import image_agent_from_env, prompt_agent_from_env
from agent_x402.chain import ChainClient
from agent_x402.config import config_value, load_environment, resolve_signing_key
from agent_x402.constants import DEFAULT_RPC_URLS
from agent_x402.custody import LocalSigner, create_custody_app

ENV_PATH = Path(__file__).parent.with_name(".env")
DEFAULT_PORTS = {"prompt": 9100, "image": 9000, "custody": 9200}

logger = logging.getLogger("agent_services")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s: %(message)s")

if ENV_PATH.exists():
    load_environment(ENV_PATH)


def prompt_app() -> FastAPI:
    return prompt_agent_from_env()


def image_app() -> FastAPI:
    return image_agent_from_env()


def custody_app() -> FastAPI:
    load_environment()
    network = config_value("PAYMENT_NETWORK", required=False, default="BSCTest")
    rpc_url = config_value("PAYMENT_RPC_URL", required=False, default=DEFAULT_RPC_URLS.get(network))
    signer = LocalSigner(resolve_signing_key(config_value("CUSTODY_ROLE", required=False, default="image") or "image"))
    logger.info("custody service signing as %s", signer.address)
    return create_custody_app(ChainClient(rpc_url), signer)


FACTORIES = {"prompt": prompt_app, "image": image_app, "custody": custody_app}


if __name__ == "__main__":
    import uvicorn

    service = sys.argv[1] if len(sys.argv) > 1 else "image"
    if service not in FACTORIES:
        raise SystemExit(f"usage: {sys.argv[0]} [{'|'.join(FACTORIES)}]")
    port = int(os.environ.get("PORT", str(DEFAULT_PORTS[service])))
    uvicorn.run(FACTORIES[service](), host="0.0.0.0", port=port)
