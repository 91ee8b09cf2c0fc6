"""
The ERP deployment: a PostgreSQL database and an ERP web application running as a Fargate service behind an
application load balancer, in a VPC with two public and two private subnets.
"""

import json
import logging
from typing import Callable, Optional, Sequence

from stacksmith.engine.entities import ResourceKind, StackConfig
from stacksmith.engine.intrinsics import get_att, join, ref, stack_value
from stacksmith.engine.stack import Stack

LOG = logging.getLogger(__name__)

DB_PORT = 5432
DB_USERNAME = "opususer"
DB_NAME = "opusdb"
DB_ENGINE_VERSION = "14.7"
WEB_PORT = 8069
LONGPOLLING_PORT = 8072
IMAGE_REPOSITORY = "opuserp15"

# sources allowed to reach the load balancer; open to any address, which synthesis reports for review
DEFAULT_INGRESS_CIDRS = ("0.0.0.0/0",)

SECRET_EXCLUDE_CHARACTERS = "\"@/\\ |'"

EXECUTION_ROLE_ACTIONS = [
    "ecr:GetAuthorizationToken",
    "ecr:BatchCheckLayerAvailability",
    "ecr:GetDownloadUrlForLayer",
    "ecr:BatchGetImage",
    "logs:CreateLogStream",
    "logs:PutLogEvents",
]


def _tcp_rule(port: int, description: str, **source) -> dict:
    return {
        "IpProtocol": "tcp",
        "FromPort": port,
        "ToPort": port,
        "Description": description,
        **source,
    }


def _allow_all_outbound() -> list[dict]:
    return [{"IpProtocol": "-1", "CidrIp": "0.0.0.0/0", "Description": "Allow all outbound traffic"}]


def _assume_role_policy(principal: dict) -> dict:
    return {
        "Version": "2012-10-17",
        "Statement": [{"Effect": "Allow", "Principal": principal, "Action": "sts:AssumeRole"}],
    }


def build_erp_stack(
    config: StackConfig,
    ingress_cidrs: Sequence[str] = DEFAULT_INGRESS_CIDRS,
    image: Optional[str] = None,
) -> Stack:
    """
    Declares the ERP topology.

    :param config: stack configuration; resource names follow ``<stack>-<purpose>-<stage>``
    :param ingress_cidrs: CIDR ranges allowed to reach the load balancer on the web and longpolling ports
    :param image: container image of the application, defaults to the ``opuserp15`` repository of the
        stack's account and region
    """
    stack = Stack(config)
    stage = config.stage
    name = config.qualified_name

    # network
    stack.declare(
        ResourceKind.NETWORK,
        "Vpc",
        {
            "Name": name("vpc"),
            "CidrBlock": "10.0.0.0/16",
            "MaxAzs": 2,
            "NatGateways": 0,
        },
    )
    public_subnets = []
    for index, zone in enumerate(("a", "b")):
        availability_zone = join("", stack_value("Region"), zone)
        public = stack.declare(
            ResourceKind.SUBNET,
            f"PublicSubnet{index + 1}",
            {
                "VpcId": ref("Vpc"),
                "CidrBlock": f"10.0.{index}.0/24",
                "AvailabilityZone": availability_zone,
                "MapPublicIpOnLaunch": True,
                "SubnetName": "OpusPublicSubnet",
            },
        )
        stack.declare(
            ResourceKind.SUBNET,
            f"PrivateSubnet{index + 1}",
            {
                "VpcId": ref("Vpc"),
                "CidrBlock": f"10.0.{index + 2}.0/24",
                "AvailabilityZone": availability_zone,
                "MapPublicIpOnLaunch": False,
                "SubnetName": "OpusPrivateSubnet",
            },
        )
        public_subnets.append(ref(public.logical_id))

    # database credentials
    stack.declare(
        ResourceKind.SECRET,
        "DbCredentials",
        {
            "Name": name("credentials"),
            "Description": "Postgresql Database Credentials",
            "GenerateSecretString": {
                "ExcludeCharacters": SECRET_EXCLUDE_CHARACTERS,
                "GenerateStringKey": "password",
                "PasswordLength": 30,
                "SecretStringTemplate": json.dumps({"username": DB_USERNAME}),
            },
        },
    )

    # security groups
    stack.declare(
        ResourceKind.SECURITY_GROUP,
        "LoadBalancerSecurityGroup",
        {
            "VpcId": ref("Vpc"),
            "GroupName": name("lb-securitygroup"),
            "GroupDescription": name("lb-securitygroup"),
            "SecurityGroupIngress": [
                _tcp_rule(port, f"tcp {port} from {cidr}", CidrIp=cidr)
                for cidr in ingress_cidrs
                for port in (WEB_PORT, LONGPOLLING_PORT)
            ],
            "SecurityGroupEgress": _allow_all_outbound(),
        },
    )
    stack.declare(
        ResourceKind.SECURITY_GROUP,
        "ErpSecurityGroup",
        {
            "VpcId": ref("Vpc"),
            "GroupName": name("erp-securitygroup"),
            "GroupDescription": name("erp-securitygroup"),
            "SecurityGroupIngress": [
                _tcp_rule(
                    WEB_PORT,
                    f"tcp Opus web Erp {stage}",
                    SourceSecurityGroupId=get_att("LoadBalancerSecurityGroup", "GroupId"),
                ),
                _tcp_rule(
                    LONGPOLLING_PORT,
                    f"tcp Opus LP Erp {stage}",
                    SourceSecurityGroupId=get_att("LoadBalancerSecurityGroup", "GroupId"),
                ),
            ],
            "SecurityGroupEgress": _allow_all_outbound(),
        },
    )
    # only the service reaches the database, no outbound rules
    stack.declare(
        ResourceKind.SECURITY_GROUP,
        "DbSecurityGroup",
        {
            "VpcId": ref("Vpc"),
            "GroupName": name("db-securitygroup"),
            "GroupDescription": name("db-securitygroup"),
            "SecurityGroupIngress": [
                _tcp_rule(
                    DB_PORT,
                    f"tcp{DB_PORT} Postgres {stage}",
                    SourceSecurityGroupId=get_att("ErpSecurityGroup", "GroupId"),
                )
            ],
            "SecurityGroupEgress": [],
        },
    )

    # database
    stack.declare(
        ResourceKind.DATABASE,
        "Database",
        {
            "DBInstanceIdentifier": name("db-instance"),
            "Engine": "postgres",
            "EngineVersion": DB_ENGINE_VERSION,
            "DBInstanceClass": "db.t3.micro",
            "DBName": DB_NAME,
            "MasterUsername": DB_USERNAME,
            "MasterUserSecret": {"SecretArn": ref("DbCredentials")},
            "Port": str(DB_PORT),
            "AllocatedStorage": "10",
            "MaxAllocatedStorage": 11,
            "MultiAZ": False,
            "PubliclyAccessible": True,
            "AllowMajorVersionUpgrade": False,
            "AutoMinorVersionUpgrade": True,
            "BackupRetentionPeriod": 0,
            "DeleteAutomatedBackups": True,
            "DeletionProtection": False,
            "DBSubnetIds": list(public_subnets),
            "VPCSecurityGroups": [get_att("DbSecurityGroup", "GroupId")],
        },
    )

    # roles
    stack.declare(
        ResourceKind.ROLE,
        "ClusterAdminRole",
        {
            "RoleName": name("admin-role"),
            "AssumeRolePolicyDocument": _assume_role_policy(
                {"AWS": join("", "arn:aws:iam::", stack_value("Account"), ":root")}
            ),
        },
    )
    stack.declare(
        ResourceKind.ROLE,
        "TaskRole",
        {
            "RoleName": f"ecs-taskrole-{stage}",
            "AssumeRolePolicyDocument": _assume_role_policy(
                {"Service": "ecs-tasks.amazonaws.com"}
            ),
        },
    )
    stack.declare(
        ResourceKind.ROLE,
        "TaskExecutionRole",
        {
            "RoleName": name("ecs-executionrole"),
            "AssumeRolePolicyDocument": _assume_role_policy(
                {"Service": "ecs-tasks.amazonaws.com"}
            ),
            "Policies": [
                {
                    "PolicyName": "execution",
                    "PolicyDocument": {
                        "Version": "2012-10-17",
                        "Statement": [
                            {
                                "Effect": "Allow",
                                "Action": EXECUTION_ROLE_ACTIONS,
                                "Resource": "*",
                            },
                            {
                                "Effect": "Allow",
                                "Action": ["secretsmanager:GetSecretValue"],
                                "Resource": [ref("DbCredentials")],
                            },
                        ],
                    },
                }
            ],
        },
    )

    # load balancer
    stack.declare(
        ResourceKind.LOAD_BALANCER,
        "LoadBalancer",
        {
            "Name": f"alb-{config.stack_name}-{stage}",
            "Scheme": "internet-facing",
            "Type": "application",
            "Subnets": list(public_subnets),
            "SecurityGroups": [get_att("LoadBalancerSecurityGroup", "GroupId")],
            "LoadBalancerAttributes": [
                {"Key": "idle_timeout.timeout_seconds", "Value": "600"},
                {"Key": "routing.http2.enabled", "Value": "false"},
                {"Key": "deletion_protection.enabled", "Value": "false"},
            ],
        },
    )
    stack.declare(
        ResourceKind.TARGET_GROUP,
        "TargetGroup",
        {
            "Name": "tcp-target-ecs-service",
            "Port": WEB_PORT,
            "Protocol": "HTTP",
            "ProtocolVersion": "HTTP1",
            "TargetType": "ip",
            "VpcId": ref("Vpc"),
        },
    )
    stack.declare(
        ResourceKind.LISTENER,
        "HttpListener",
        {
            "LoadBalancerArn": ref("LoadBalancer"),
            "Port": WEB_PORT,
            "Protocol": "HTTP",
            "DefaultActions": [{"Type": "forward", "TargetGroupArn": ref("TargetGroup")}],
        },
    )

    # container service
    stack.declare(ResourceKind.CLUSTER, "Cluster", {"ClusterName": name("cluster")})

    container_name = name("container")
    if image is None:
        image = join(
            "",
            stack_value("Account"),
            ".dkr.ecr.",
            stack_value("Region"),
            f".amazonaws.com/{IMAGE_REPOSITORY}:latest",
        )
    stack.declare(
        ResourceKind.TASK_DEFINITION,
        "TaskDefinition",
        {
            "Family": name("task-definition"),
            "Cpu": "1024",
            "Memory": "2048",
            "NetworkMode": "awsvpc",
            "RequiresCompatibilities": ["FARGATE"],
            "RuntimePlatform": {
                "CpuArchitecture": "X86_64",
                "OperatingSystemFamily": "LINUX",
            },
            "TaskRoleArn": get_att("TaskRole", "Arn"),
            "ExecutionRoleArn": get_att("TaskExecutionRole", "Arn"),
            "ContainerDefinitions": [
                {
                    "Name": container_name,
                    "Image": image,
                    "Essential": True,
                    "PortMappings": [
                        {"ContainerPort": WEB_PORT, "Protocol": "tcp"},
                        {"ContainerPort": LONGPOLLING_PORT, "Protocol": "tcp"},
                    ],
                    "LogConfiguration": {
                        "LogDriver": "awslogs",
                        "Options": {
                            "awslogs-stream-prefix": "erp-logs",
                            "awslogs-region": stack_value("Region"),
                        },
                    },
                    "Environment": [
                        {"Name": "POSTGRES_HOST", "Value": get_att("Database", "Endpoint.Address")},
                        {"Name": "POSTGRES_PORT", "Value": get_att("Database", "Endpoint.Port")},
                        {"Name": "POSTGRES_USER", "Value": get_att("Database", "MasterUsername")},
                    ],
                    # the password is read from the secret at container start, never stored in the definition
                    "Secrets": [
                        {
                            "Name": "POSTGRES_PASSWORD",
                            "ValueFrom": join(":", ref("DbCredentials"), "password::"),
                        }
                    ],
                }
            ],
        },
    )
    stack.declare(
        ResourceKind.SERVICE,
        "Service",
        {
            "ServiceName": name("fargate-service"),
            "Cluster": ref("Cluster"),
            "TaskDefinition": ref("TaskDefinition"),
            "LaunchType": "FARGATE",
            "DesiredCount": 1,
            "EnableExecuteCommand": True,
            "DeploymentConfiguration": {"MinimumHealthyPercent": 100, "MaximumPercent": 200},
            "NetworkConfiguration": {
                "AwsvpcConfiguration": {
                    "AssignPublicIp": "DISABLED",
                    "Subnets": list(public_subnets),
                    "SecurityGroups": [get_att("ErpSecurityGroup", "GroupId")],
                }
            },
            "LoadBalancers": [
                {
                    "ContainerName": container_name,
                    "ContainerPort": WEB_PORT,
                    "TargetGroupArn": ref("TargetGroup"),
                }
            ],
        },
        # the target group only accepts targets once it is attached to the listener
        depends_on=["HttpListener"],
    )

    stack.add_output("dbEndpoint", get_att("Database", "Endpoint.Address"))
    stack.add_output("secretName", get_att("DbCredentials", "Name"))
    LOG.debug("Declared %d resources of the ERP topology", len(stack))
    return stack


TOPOLOGIES: dict[str, Callable[[StackConfig], Stack]] = {
    "erp": build_erp_stack,
}
