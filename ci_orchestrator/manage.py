# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Management commands, run as ``ci_orchestrator_manage <command>``. """

import logging

import click
from flask.cli import FlaskGroup

from ci_orchestrator import app, conf, create_app, db
from ci_orchestrator.control import get_control
from ci_orchestrator.scheduler.reconciler import Reconciler


def _create_app(*args):
    return app


@click.group(cls=FlaskGroup, create_app=_create_app, add_default_commands=False)
@click.option("-d", "--debug", is_flag=True, help="Debug output.")
@click.option("-v", "--verbose", is_flag=True, help="Verbose output.")
@click.option("-q", "--quiet", is_flag=True, help="Only report errors.")
def cli(debug, verbose, quiet):
    create_app(debug=debug, verbose=verbose, quiet=quiet)


@cli.command()
def initdb():
    """ Creates the database tables if they do not exist yet.
    """
    db.create_tables()
    click.echo("Database %s initialized" % db.engine.url)


@cli.command()
@click.option("--host", default=conf.host, show_default=True)
@click.option("--port", default=conf.port, type=int, show_default=True)
@click.option("--debug", "debug_mode", is_flag=True)
def run(host, port, debug_mode):
    """ Runs the API with the reconciliation poller next to it.
    """
    logging.info("Starting ci-orchestrator")
    db.create_tables()
    reconciler = Reconciler(db, conf, get_control().executor)
    reconciler.start()
    try:
        app.run(host=host, port=port, debug=debug_mode, use_reloader=False)
    finally:
        reconciler.stop()


@cli.command()
def reconcile():
    """ Settles the builds and deployments no process executes anymore.
    """
    builds, deployments = Reconciler(db, conf, None).reconcile_once()
    click.echo("Settled %d builds and %d deployments" % (len(builds), len(deployments)))


def main():
    cli()


if __name__ == "__main__":
    main()
