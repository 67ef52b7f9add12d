# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Database handler functions."""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

log = logging.getLogger(__name__)


def make_engine(uri, debug=False):
    """ Creates the engine for uri.

    If SQLite in-memory database is used, sets the driver options so
    multiple threads can share the same database. This is used *only*
    during tests.
    """
    options = {"echo": debug}
    if uri.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if uri in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
    return create_engine(uri, **options)


class Database(object):
    """Class for handling database connections."""

    def __init__(self, uri, debug=False):
        self.uri = uri
        self.engine = make_engine(uri, debug=debug)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    def __repr__(self):
        return "<Database %s>" % self.engine.url

    @contextmanager
    def session_scope(self):
        """ Provides a transactional scope around a series of operations. """
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self):
        """ Creates our tables in the database. """
        from ci_orchestrator.models import Base
        Base.metadata.create_all(self.engine)

    def drop_tables(self):
        from ci_orchestrator.models import Base
        Base.metadata.drop_all(self.engine)
