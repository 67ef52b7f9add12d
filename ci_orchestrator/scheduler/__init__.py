# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Admission and execution of builds and deployments. """
