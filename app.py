#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Production entrypoint: ``uvicorn app:app``
"""
import logging
import os

from insurecrm.main import app

logger = logging.getLogger(__name__)

logger.info("=== InsureCRM API Startup Complete ===")
logger.info("Environment: {}".format(os.getenv("ENVIRONMENT", "development")))
logger.info("Total routes: {}".format(len(app.routes)))

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
