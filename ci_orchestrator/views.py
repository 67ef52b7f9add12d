# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" The orchestrator's public RESTful API.

A thin layer over ci_orchestrator.control. Authentication is left to the
web server in front of the application.
"""

import json

from flask import Response, jsonify, request
from flask.views import MethodView

from ci_orchestrator import app, log
from ci_orchestrator.control import get_control
from ci_orchestrator.errors import ValidationError

api_prefix = "/api/1"


def get_json_body(required=()):
    """ Returns the JSON object posted, checking the required keys are there. """
    raw = request.get_data().decode("utf-8")
    if not raw.strip():
        data = {}
    else:
        try:
            data = json.loads(raw)
        except ValueError:
            log.error("Invalid JSON submitted")
            raise ValidationError("Invalid JSON submitted")
    if not isinstance(data, dict):
        raise ValidationError("A JSON object is expected")
    for key in required:
        if key not in data:
            log.error("Missing %s", key)
            raise ValidationError("Missing %s" % key)
    return data


def text_response(text):
    return Response(text, mimetype="text/plain")


class PipelineBuildAPI(MethodView):

    def get(self, pipeline_id):
        builds = get_control().list_builds(pipeline_id)
        return jsonify({"items": builds}), 200

    def post(self, pipeline_id):
        data = get_json_body(required=("ref",))
        build = get_control().submit(pipeline_id, data["ref"], source="manual")
        return jsonify(build), 201


class BuildAPI(MethodView):

    def get(self, build_id):
        return jsonify(get_control().get_build(build_id)), 200


class BuildLogsAPI(MethodView):

    def get(self, build_id):
        return text_response(get_control().get_build_logs(build_id))


class BuildCancelAPI(MethodView):

    def post(self, build_id):
        return jsonify(get_control().cancel_build(build_id)), 200


class BuildDeploymentAPI(MethodView):

    def get(self, build_id):
        deployments = get_control().list_deployments(build_id)
        return jsonify({"items": deployments}), 200

    def post(self, build_id):
        data = get_json_body(required=("environment",))
        deployment = get_control().deploy(
            build_id,
            data["environment"],
            replicas=data.get("replicas", 1),
            namespace=data.get("namespace"),
            service_name=data.get("service_name"),
            ingress_host=data.get("ingress_host", ""),
        )
        return jsonify(deployment), 201


class DeploymentAPI(MethodView):

    def get(self, deployment_id):
        return jsonify(get_control().get_deployment(deployment_id)), 200


class DeploymentLogsAPI(MethodView):

    def get(self, deployment_id):
        return text_response(get_control().get_deployment_logs(deployment_id))


class WorkloadLogsAPI(MethodView):

    def get(self, deployment_id):
        tail_lines = request.args.get("tail_lines", 100)
        return text_response(get_control().get_workload_logs(deployment_id, tail_lines))


class DeploymentRollbackAPI(MethodView):

    def post(self, deployment_id):
        return jsonify(get_control().rollback(deployment_id)), 202


class DeploymentCancelAPI(MethodView):

    def post(self, deployment_id):
        return jsonify(get_control().cancel_deployment(deployment_id)), 200


class WebhookAPI(MethodView):

    def post(self, provider, project_secret):
        result = get_control().handle_webhook(
            provider, project_secret, request.get_data(), request.headers)
        return jsonify(result), 200


def register_v1_api():
    """ Registers version 1 of the API. """
    rules = (
        ("/pipelines/<int:pipeline_id>/builds", PipelineBuildAPI, "pipeline_builds",
         ["GET", "POST"]),
        ("/builds/<int:build_id>", BuildAPI, "builds", ["GET"]),
        ("/builds/<int:build_id>/logs", BuildLogsAPI, "build_logs", ["GET"]),
        ("/builds/<int:build_id>/cancel", BuildCancelAPI, "build_cancel", ["POST"]),
        ("/builds/<int:build_id>/deployments", BuildDeploymentAPI, "build_deployments",
         ["GET", "POST"]),
        ("/deployments/<int:deployment_id>", DeploymentAPI, "deployments", ["GET"]),
        ("/deployments/<int:deployment_id>/logs", DeploymentLogsAPI, "deployment_logs",
         ["GET"]),
        ("/deployments/<int:deployment_id>/workload-logs", WorkloadLogsAPI,
         "workload_logs", ["GET"]),
        ("/deployments/<int:deployment_id>/rollback", DeploymentRollbackAPI,
         "deployment_rollback", ["POST"]),
        ("/deployments/<int:deployment_id>/cancel", DeploymentCancelAPI,
         "deployment_cancel", ["POST"]),
        ("/webhooks/<provider>/<project_secret>", WebhookAPI, "webhooks", ["POST"]),
    )
    for rule, view_class, endpoint, methods in rules:
        app.add_url_rule(api_prefix + rule, view_func=view_class.as_view(endpoint),
                         methods=methods)


register_v1_api()
