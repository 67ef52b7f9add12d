# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Generic cluster functions, and the Kubernetes backend.

A workload is the triple of a Deployment, the Service exposing it and,
when a host is given, the Ingress routing external traffic to it. All
three share the workload name and carry the label ``app=<name>``.
"""

from abc import ABCMeta, abstractmethod
import contextlib
import logging

from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from ci_orchestrator.errors import (
    AUTH_FAILED,
    INVALID_INPUT,
    NOT_FOUND,
    TRANSIENT,
    ClusterError,
)

log = logging.getLogger(__name__)

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"


class WorkloadRef(object):
    def __init__(self, name, namespace):
        self.name = name
        self.namespace = namespace

    def __repr__(self):
        return "<WorkloadRef %s/%s>" % (self.namespace, self.name)

    def __eq__(self, other):
        return (isinstance(other, WorkloadRef) and self.name == other.name
                and self.namespace == other.namespace)

    def __hash__(self):
        return hash((self.name, self.namespace))


class WorkloadSpec(object):
    """ Everything the cluster needs to run one build's image.

    Resources, port and probes fall back to the configured defaults.
    """

    def __init__(self, name, namespace, image, replicas=1, port=None,
                 cpu_request=None, memory_request=None, cpu_limit=None, memory_limit=None,
                 health_check_path=None, ingress_host="", labels=None, config=None):
        if not name:
            raise ClusterError(INVALID_INPUT, "A workload needs a name")
        if not image:
            raise ClusterError(INVALID_INPUT, "A workload needs an image")
        if replicas is None or int(replicas) < 0:
            raise ClusterError(INVALID_INPUT, "Invalid replica count %r" % replicas)
        self.name = name
        self.namespace = namespace or (config.default_namespace if config else "default")
        self.image = image
        self.replicas = int(replicas)
        self.port = int(port or (config.default_container_port if config else 8080))
        self.cpu_request = cpu_request or (config.default_cpu_request if config else "100m")
        self.memory_request = memory_request or (
            config.default_memory_request if config else "128Mi")
        self.cpu_limit = cpu_limit or (config.default_cpu_limit if config else "500m")
        self.memory_limit = memory_limit or (config.default_memory_limit if config else "512Mi")
        self.health_check_path = health_check_path or (
            config.health_check_path if config else "/health")
        self.ingress_host = ingress_host or ""
        self.labels = dict(labels or {})

    def __repr__(self):
        return "<WorkloadSpec %s/%s, image=%s, replicas=%d>" % (
            self.namespace, self.name, self.image, self.replicas)

    @property
    def ref(self):
        return WorkloadRef(self.name, self.namespace)


class ReadinessInfo(object):
    def __init__(self, desired, available=0, updated=0, revision=None, failed=False,
                 message=""):
        self.desired = desired
        self.available = available
        self.updated = updated
        self.revision = revision
        self.failed = failed
        self.message = message

    def __repr__(self):
        return "<ReadinessInfo %d/%d available, revision=%r>" % (
            self.available, self.desired, self.revision)

    @property
    def ready(self):
        return (not self.failed and self.available == self.desired
                and self.updated >= self.desired)


class GenericClusterBackend(metaclass=ABCMeta):
    """External Api for clusters"""

    backend = "generic"
    backends = {}
    # Whether rollback() can return to an earlier revision on its own
    supports_revision_history = False

    @classmethod
    def register_backend_class(cls, backend_class):
        GenericClusterBackend.backends[backend_class.backend] = backend_class

    @classmethod
    def create(cls, config, **extra):
        backend = config.cluster_backend
        if backend not in GenericClusterBackend.backends:
            raise ValueError("Cluster backend='%s' not recognized" % backend)
        return GenericClusterBackend.backends[backend](config=config, **extra)

    @abstractmethod
    def apply(self, spec, cancel=None, timeout=None):
        """
        Creates or updates the workload described by spec in place.

        :param spec: WorkloadSpec
        :returns: the workload revision as str, if the backend knows it
        :raises: ClusterError, Cancelled
        """
        raise NotImplementedError()

    @abstractmethod
    def scale(self, ref, replicas, timeout=None):
        raise NotImplementedError()

    @abstractmethod
    def get_status(self, ref, timeout=None):
        """ :returns: ReadinessInfo """
        raise NotImplementedError()

    @abstractmethod
    def rollback(self, ref, timeout=None):
        """
        Reverts the workload to its previous revision.

        :returns: the revision rolled back to
        :raises: ClusterError with kind NotFound when there is no earlier revision
        """
        raise NotImplementedError()

    @abstractmethod
    def delete(self, ref, timeout=None):
        raise NotImplementedError()

    @abstractmethod
    def get_logs(self, ref, tail_lines=100, timeout=None):
        """ :returns: str with the last lines of every pod of the workload """
        raise NotImplementedError()


@contextlib.contextmanager
def _translate_errors(what):
    """ Turns kubernetes client failures into ClusterError. """
    try:
        yield
    except ApiException as e:
        if e.status in (401, 403):
            kind = AUTH_FAILED
        elif e.status == 404:
            kind = NOT_FOUND
        elif e.status in (400, 409, 422):
            kind = INVALID_INPUT
        else:
            kind = TRANSIENT
        raise ClusterError(kind, "%s failed: %s %s" % (what, e.status, e.reason))
    except HTTPError as e:
        raise ClusterError(TRANSIENT, "%s failed: %s" % (what, e))


class KubernetesCluster(GenericClusterBackend):
    """ Cluster backend talking to the Kubernetes API. """

    backend = "kubernetes"
    supports_revision_history = True

    def __init__(self, config, kubeconfig=None, api_client=None):
        self.config = config
        self.kubeconfig = kubeconfig if kubeconfig is not None else config.kubeconfig
        self._api_client = api_client
        self._apps = None
        self._core = None
        self._networking = None

    def __repr__(self):
        return "<KubernetesCluster kubeconfig=%r>" % self.kubeconfig

    def _connect(self):
        if self._api_client is not None:
            return self._api_client
        if self.kubeconfig:
            self._api_client = kube_config.new_client_from_config(config_file=self.kubeconfig)
        else:
            try:
                kube_config.load_incluster_config()
            except ConfigException:
                kube_config.load_kube_config()
            self._api_client = client.ApiClient()
        return self._api_client

    @property
    def apps(self):
        if self._apps is None:
            self._apps = client.AppsV1Api(self._connect())
        return self._apps

    @property
    def core(self):
        if self._core is None:
            self._core = client.CoreV1Api(self._connect())
        return self._core

    @property
    def networking(self):
        if self._networking is None:
            self._networking = client.NetworkingV1Api(self._connect())
        return self._networking

    # Object builders

    @staticmethod
    def _labels(spec):
        labels = dict(spec.labels)
        labels["app"] = spec.name
        return labels

    def deployment_body(self, spec):
        labels = self._labels(spec)
        probe_action = client.V1HTTPGetAction(path=spec.health_check_path, port=spec.port)
        container = client.V1Container(
            name=spec.name,
            image=spec.image,
            ports=[client.V1ContainerPort(container_port=spec.port)],
            resources=client.V1ResourceRequirements(
                requests={"cpu": spec.cpu_request, "memory": spec.memory_request},
                limits={"cpu": spec.cpu_limit, "memory": spec.memory_limit},
            ),
            liveness_probe=client.V1Probe(
                http_get=probe_action, initial_delay_seconds=30, period_seconds=10),
            readiness_probe=client.V1Probe(
                http_get=probe_action, initial_delay_seconds=5, period_seconds=5),
        )
        return client.V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=client.V1ObjectMeta(
                name=spec.name, namespace=spec.namespace, labels=labels),
            spec=client.V1DeploymentSpec(
                replicas=spec.replicas,
                selector=client.V1LabelSelector(match_labels={"app": spec.name}),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(containers=[container]),
                ),
            ),
        )

    def service_body(self, spec):
        return client.V1Service(
            api_version="v1",
            kind="Service",
            metadata=client.V1ObjectMeta(
                name=spec.name, namespace=spec.namespace, labels=self._labels(spec)),
            spec=client.V1ServiceSpec(
                selector={"app": spec.name},
                ports=[client.V1ServicePort(
                    port=spec.port, target_port=spec.port, protocol="TCP")],
            ),
        )

    def ingress_body(self, spec):
        backend = client.V1IngressBackend(
            service=client.V1IngressServiceBackend(
                name=spec.name, port=client.V1ServiceBackendPort(number=spec.port)))
        return client.V1Ingress(
            api_version="networking.k8s.io/v1",
            kind="Ingress",
            metadata=client.V1ObjectMeta(
                name=spec.name, namespace=spec.namespace, labels=self._labels(spec)),
            spec=client.V1IngressSpec(rules=[client.V1IngressRule(
                host=spec.ingress_host,
                http=client.V1HTTPIngressRuleValue(paths=[client.V1HTTPIngressPath(
                    path="/", path_type="Prefix", backend=backend)]),
            )]),
        )

    # Capabilities

    def _exists(self, read, name, namespace, timeout):
        try:
            read(name, namespace, _request_timeout=timeout)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    def _create_or_patch(self, kind, read, create, patch, body, cancel, timeout):
        name = body.metadata.name
        namespace = body.metadata.namespace
        if cancel is not None:
            cancel.check()
        with _translate_errors("Applying %s %s/%s" % (kind, namespace, name)):
            if self._exists(read, name, namespace, timeout):
                log.info("Updating %s %s/%s", kind, namespace, name)
                return patch(name, namespace, body, _request_timeout=timeout)
            log.info("Creating %s %s/%s", kind, namespace, name)
            return create(namespace, body, _request_timeout=timeout)

    def ensure_namespace(self, namespace, cancel=None, timeout=None):
        """ Creates namespace unless it exists already. """
        if cancel is not None:
            cancel.check()
        with _translate_errors("Creating namespace %s" % namespace):
            try:
                self.core.read_namespace(namespace, _request_timeout=timeout)
                return
            except ApiException as e:
                if e.status != 404:
                    raise
            log.info("Creating namespace %s", namespace)
            body = client.V1Namespace(
                api_version="v1", kind="Namespace",
                metadata=client.V1ObjectMeta(name=namespace))
            try:
                self.core.create_namespace(body, _request_timeout=timeout)
            except ApiException as e:
                # Somebody else created it meanwhile
                if e.status != 409:
                    raise

    def apply(self, spec, cancel=None, timeout=None):
        self.ensure_namespace(spec.namespace, cancel, timeout)
        deployment = self._create_or_patch(
            "deployment", self.apps.read_namespaced_deployment,
            self.apps.create_namespaced_deployment, self.apps.patch_namespaced_deployment,
            self.deployment_body(spec), cancel, timeout)
        self._create_or_patch(
            "service", self.core.read_namespaced_service,
            self.core.create_namespaced_service, self.core.patch_namespaced_service,
            self.service_body(spec), cancel, timeout)
        if spec.ingress_host:
            self._create_or_patch(
                "ingress", self.networking.read_namespaced_ingress,
                self.networking.create_namespaced_ingress,
                self.networking.patch_namespaced_ingress,
                self.ingress_body(spec), cancel, timeout)
        return _revision_of(deployment)

    def scale(self, ref, replicas, timeout=None):
        with _translate_errors("Scaling %r" % ref):
            self.apps.patch_namespaced_deployment_scale(
                ref.name, ref.namespace, {"spec": {"replicas": int(replicas)}},
                _request_timeout=timeout)
        log.info("Scaled %r to %d replicas", ref, replicas)

    def get_status(self, ref, timeout=None):
        with _translate_errors("Reading status of %r" % ref):
            deployment = self.apps.read_namespaced_deployment_status(
                ref.name, ref.namespace, _request_timeout=timeout)

        desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
        status = deployment.status
        info = ReadinessInfo(
            desired=desired,
            available=status.available_replicas or 0,
            updated=status.updated_replicas or 0,
            revision=_revision_of(deployment),
        )
        generation = deployment.metadata.generation
        if generation is not None and (status.observed_generation or 0) < generation:
            # The controller did not look at the latest spec yet
            info.updated = 0
        for condition in status.conditions or []:
            if condition.type == "Progressing" and condition.reason == "ProgressDeadlineExceeded":
                info.failed = True
                info.message = condition.message or condition.reason
        return info

    def rollback(self, ref, timeout=None):
        """ What ``kubectl rollout undo`` does: copy the pod template of the
        newest older ReplicaSet back into the Deployment.
        """
        with _translate_errors("Rolling back %r" % ref):
            deployment = self.apps.read_namespaced_deployment(
                ref.name, ref.namespace, _request_timeout=timeout)
            current = int(_revision_of(deployment) or 0)
            selector = ",".join(
                "%s=%s" % item for item in sorted(deployment.spec.selector.match_labels.items()))
            replica_sets = self.apps.list_namespaced_replica_set(
                ref.namespace, label_selector=selector, _request_timeout=timeout).items

            candidates = []
            for rs in replica_sets:
                owners = rs.metadata.owner_references or []
                if not any(o.uid == deployment.metadata.uid for o in owners):
                    continue
                revision = int(_revision_of(rs) or 0)
                if 0 < revision < current:
                    candidates.append((revision, rs))
            if not candidates:
                raise ClusterError(NOT_FOUND, "%r has no revision before %d" % (ref, current))

            revision, previous = max(candidates, key=lambda c: c[0])
            template = previous.spec.template
            labels = dict(template.metadata.labels or {})
            labels.pop("pod-template-hash", None)
            template.metadata.labels = labels
            self.apps.patch_namespaced_deployment(
                ref.name, ref.namespace, {"spec": {"template": template}},
                _request_timeout=timeout)
        log.info("Rolled %r back from revision %d to %d", ref, current, revision)
        return str(revision)

    def delete(self, ref, timeout=None):
        options = client.V1DeleteOptions(propagation_policy="Foreground")
        deletes = (
            ("ingress", self.networking.delete_namespaced_ingress),
            ("service", self.core.delete_namespaced_service),
            ("deployment", self.apps.delete_namespaced_deployment),
        )
        for kind, delete in deletes:
            with _translate_errors("Deleting %s of %r" % (kind, ref)):
                try:
                    delete(ref.name, ref.namespace, body=options, _request_timeout=timeout)
                except ApiException as e:
                    if e.status != 404:
                        raise
                    log.debug("No %s to delete for %r", kind, ref)
        log.info("Deleted %r", ref)

    def get_logs(self, ref, tail_lines=100, timeout=None):
        chunks = []
        with _translate_errors("Reading logs of %r" % ref):
            pods = self.core.list_namespaced_pod(
                ref.namespace, label_selector="app=%s" % ref.name,
                _request_timeout=timeout).items
            for pod in pods:
                text = self.core.read_namespaced_pod_log(
                    pod.metadata.name, ref.namespace, tail_lines=tail_lines,
                    _request_timeout=timeout)
                chunks.append("==> %s <==\n%s" % (pod.metadata.name, text or ""))
        return "\n".join(chunks)


def _revision_of(obj):
    annotations = getattr(obj.metadata, "annotations", None) or {}
    return annotations.get(REVISION_ANNOTATION)


GenericClusterBackend.register_backend_class(KubernetesCluster)
