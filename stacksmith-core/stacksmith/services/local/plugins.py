"""Plugins registering the local providers in the ``stacksmith.resource_providers`` namespace."""

from stacksmith.engine.resource_provider import ResourceProviderPlugin


class NetworkProviderPlugin(ResourceProviderPlugin):
    name = "Network"

    def load(self):
        from stacksmith.services.local.provider import NetworkProvider

        self.factory = NetworkProvider


class SubnetProviderPlugin(ResourceProviderPlugin):
    name = "Subnet"

    def load(self):
        from stacksmith.services.local.provider import SubnetProvider

        self.factory = SubnetProvider


class SecurityGroupProviderPlugin(ResourceProviderPlugin):
    name = "SecurityGroup"

    def load(self):
        from stacksmith.services.local.provider import SecurityGroupProvider

        self.factory = SecurityGroupProvider


class SecretProviderPlugin(ResourceProviderPlugin):
    name = "Secret"

    def load(self):
        from stacksmith.services.local.provider import SecretProvider

        self.factory = SecretProvider


class DatabaseProviderPlugin(ResourceProviderPlugin):
    name = "Database"

    def load(self):
        from stacksmith.services.local.provider import DatabaseProvider

        self.factory = DatabaseProvider


class RoleProviderPlugin(ResourceProviderPlugin):
    name = "Role"

    def load(self):
        from stacksmith.services.local.provider import RoleProvider

        self.factory = RoleProvider


class ClusterProviderPlugin(ResourceProviderPlugin):
    name = "Cluster"

    def load(self):
        from stacksmith.services.local.provider import ClusterProvider

        self.factory = ClusterProvider


class TaskDefinitionProviderPlugin(ResourceProviderPlugin):
    name = "TaskDefinition"

    def load(self):
        from stacksmith.services.local.provider import TaskDefinitionProvider

        self.factory = TaskDefinitionProvider


class ServiceProviderPlugin(ResourceProviderPlugin):
    name = "Service"

    def load(self):
        from stacksmith.services.local.provider import ServiceProvider

        self.factory = ServiceProvider


class LoadBalancerProviderPlugin(ResourceProviderPlugin):
    name = "LoadBalancer"

    def load(self):
        from stacksmith.services.local.provider import LoadBalancerProvider

        self.factory = LoadBalancerProvider


class ListenerProviderPlugin(ResourceProviderPlugin):
    name = "Listener"

    def load(self):
        from stacksmith.services.local.provider import ListenerProvider

        self.factory = ListenerProvider


class TargetGroupProviderPlugin(ResourceProviderPlugin):
    name = "TargetGroup"

    def load(self):
        from stacksmith.services.local.provider import TargetGroupProvider

        self.factory = TargetGroupProvider
