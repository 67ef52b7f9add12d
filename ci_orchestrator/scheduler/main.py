# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""The orchestrator daemon.

Builds and deployments run in the process that admitted them. The daemon
only runs the reconciliation poller, which settles the executions a
crashed process left behind.
"""

import logging

from ci_orchestrator import conf, db
from ci_orchestrator.scheduler.reconciler import Reconciler

log = logging.getLogger(__name__)


def main():
    log.info("Starting ci_orchestrator_daemon.")
    db.create_tables()
    # No executions run here, so nothing is excluded from reconciliation
    polling_thread = Reconciler(db, conf, None)
    polling_thread.start()
    try:
        while polling_thread.is_alive():
            polling_thread.join(1)
    except KeyboardInterrupt:
        log.info("Stopping ci_orchestrator_daemon.")
        polling_thread.stop()
        polling_thread.join(5)


if __name__ == "__main__":
    main()
