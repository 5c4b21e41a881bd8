"""EKS cluster of one blue/green environment."""

import json
from typing import Sequence

import pulumi
import pulumi_aws as aws
import pulumi_tls as tls

from infra.config import NodeGroupSettings

# aws-node picks its ENIConfig from the node's zone label
VPC_CNI_CUSTOM_NETWORKING = {
    "env": {
        "AWS_VPC_K8S_CNI_CUSTOM_NETWORK_CFG": "true",
        "ENI_CONFIG_LABEL_DEF": "topology.kubernetes.io/zone",
    }
}


class EksCluster(pulumi.ComponentResource):
    """Private-endpoint EKS cluster with IRSA, core add-ons and one managed node group."""

    def __init__(
        self,
        name: str,
        environment: str,
        cluster_name: str,
        version: str,
        vpc_id: pulumi.Input[str],
        vpc_cidr: pulumi.Input[str],
        subnet_ids: pulumi.Input[Sequence[str]],
        cluster_role_arn: pulumi.Output[str],
        node_role_arn: pulumi.Output[str],
        node_group: NodeGroupSettings,
        provider: aws.Provider,
        tags: dict[str, str] | None = None,
        opts: pulumi.ResourceOptions | None = None,
    ):
        super().__init__("eksbluegreen:infrastructure:EksCluster", name, None, opts)

        child_opts = pulumi.ResourceOptions(parent=self, provider=provider)
        self._tags = tags or {}
        self._name = name
        self._environment = environment
        self._provider = provider

        self.cluster_sg = self._create_cluster_security_group(vpc_id, vpc_cidr, child_opts)

        self.cluster = aws.eks.Cluster(
            f"{name}-eks-cluster",
            name=cluster_name,
            role_arn=cluster_role_arn,
            version=version,
            vpc_config=aws.eks.ClusterVpcConfigArgs(
                subnet_ids=subnet_ids,
                security_group_ids=[self.cluster_sg.id],
                endpoint_private_access=True,
                endpoint_public_access=False,
            ),
            access_config=aws.eks.ClusterAccessConfigArgs(
                authentication_mode="API_AND_CONFIG_MAP",
                bootstrap_cluster_creator_admin_permissions=True,
            ),
            tags={"Name": cluster_name, **self._tags},
            opts=child_opts,
        )

        self.oidc_provider = self._create_oidc_provider()

        self.aws_node_role = self._create_irsa_role(
            role_name="aws-node",
            service_account_name="aws-node",
            namespace="kube-system",
            managed_policy_arns=["arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy"],
        )

        self.vpc_cni_addon = aws.eks.Addon(
            f"{name}-vpc-cni",
            cluster_name=self.cluster.name,
            addon_name="vpc-cni",
            service_account_role_arn=self.aws_node_role.arn,
            configuration_values=json.dumps(VPC_CNI_CUSTOM_NETWORKING),
            resolve_conflicts_on_create="OVERWRITE",
            resolve_conflicts_on_update="OVERWRITE",
            tags={"Name": f"{name}-vpc-cni", **self._tags},
            opts=pulumi.ResourceOptions(
                parent=self,
                provider=provider,
                depends_on=[self.cluster, self.oidc_provider, self.aws_node_role],
            ),
        )

        self.kube_proxy_addon = aws.eks.Addon(
            f"{name}-kube-proxy",
            cluster_name=self.cluster.name,
            addon_name="kube-proxy",
            resolve_conflicts_on_create="OVERWRITE",
            resolve_conflicts_on_update="PRESERVE",
            tags={"Name": f"{name}-kube-proxy", **self._tags},
            opts=pulumi.ResourceOptions(
                parent=self,
                provider=provider,
                depends_on=[self.cluster],
            ),
        )

        # Nodes join only once aws-node runs with the custom network settings
        self.node_group = self._create_node_group(
            node_role_arn=node_role_arn,
            subnet_ids=subnet_ids,
            settings=node_group,
        )

        # coredns needs schedulable nodes to become active
        self.coredns_addon = aws.eks.Addon(
            f"{name}-coredns",
            cluster_name=self.cluster.name,
            addon_name="coredns",
            resolve_conflicts_on_create="OVERWRITE",
            resolve_conflicts_on_update="PRESERVE",
            tags={"Name": f"{name}-coredns", **self._tags},
            opts=pulumi.ResourceOptions(
                parent=self,
                provider=provider,
                depends_on=[self.node_group],
            ),
        )

        self.cluster_name = self.cluster.name
        self.cluster_endpoint = self.cluster.endpoint
        self.cluster_arn = self.cluster.arn
        self.cluster_security_group_id = self.cluster_sg.id
        self.oidc_provider_arn = self.oidc_provider.arn

        self.register_outputs(
            {
                "cluster_name": self.cluster_name,
                "cluster_endpoint": self.cluster_endpoint,
                "cluster_arn": self.cluster_arn,
                "oidc_provider_arn": self.oidc_provider_arn,
            }
        )

    def _create_cluster_security_group(
        self,
        vpc_id: pulumi.Input[str],
        vpc_cidr: pulumi.Input[str],
        opts: pulumi.ResourceOptions,
    ) -> aws.ec2.SecurityGroup:
        sg = aws.ec2.SecurityGroup(
            f"{self._name}-eks-cluster-sg",
            vpc_id=vpc_id,
            description="Security group for EKS cluster control plane",
            tags={
                "Name": f"{self._name}-eks-cluster-sg",
                **self._tags,
            },
            opts=opts,
        )

        aws.ec2.SecurityGroupRule(
            f"{self._name}-eks-sg-self-ingress",
            type="ingress",
            security_group_id=sg.id,
            source_security_group_id=sg.id,
            protocol="-1",
            from_port=0,
            to_port=0,
            description="Allow all traffic from self",
            opts=opts,
        )

        # Private endpoint only: the API is reachable from inside the VPC
        aws.ec2.SecurityGroupRule(
            f"{self._name}-eks-sg-https-ingress",
            type="ingress",
            security_group_id=sg.id,
            cidr_blocks=[vpc_cidr],
            protocol="tcp",
            from_port=443,
            to_port=443,
            description="Allow HTTPS from VPC",
            opts=opts,
        )

        aws.ec2.SecurityGroupRule(
            f"{self._name}-eks-sg-egress",
            type="egress",
            security_group_id=sg.id,
            cidr_blocks=["0.0.0.0/0"],
            protocol="-1",
            from_port=0,
            to_port=0,
            description="Allow all outbound traffic",
            opts=opts,
        )

        return sg

    def _create_oidc_provider(self) -> aws.iam.OpenIdConnectProvider:
        """Create OIDC provider for IAM Roles for Service Accounts (IRSA)."""
        oidc_issuer = self.cluster.identities[0].oidcs[0].issuer

        tls_cert = oidc_issuer.apply(lambda url: tls.get_certificate(url=url))
        thumbprint = tls_cert.apply(lambda cert: cert.certificates[0].sha1_fingerprint)

        return aws.iam.OpenIdConnectProvider(
            f"{self._name}-oidc-provider",
            url=oidc_issuer,
            client_id_lists=["sts.amazonaws.com"],
            thumbprint_lists=[thumbprint],
            tags={
                "Name": f"{self._name}-oidc-provider",
                **self._tags,
            },
            opts=pulumi.ResourceOptions(
                parent=self,
                provider=self._provider,
                depends_on=[self.cluster],
            ),
        )

    def _create_irsa_role(
        self,
        role_name: str,
        service_account_name: str,
        namespace: str,
        managed_policy_arns: list[str],
    ) -> aws.iam.Role:
        """Create a role that one service account assumes through OIDC federation."""
        oidc_provider_arn = self.oidc_provider.arn
        oidc_issuer_url = self.cluster.identities[0].oidcs[0].issuer

        assume_role_policy = pulumi.Output.all(
            oidc_provider_arn, oidc_issuer_url
        ).apply(
            lambda args: json.dumps(
                {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Principal": {"Federated": args[0]},
                            "Action": "sts:AssumeRoleWithWebIdentity",
                            "Condition": {
                                "StringEquals": {
                                    f"{args[1].replace('https://', '')}:aud": "sts.amazonaws.com",
                                    f"{args[1].replace('https://', '')}:sub": f"system:serviceaccount:{namespace}:{service_account_name}",
                                }
                            },
                        }
                    ],
                }
            )
        )

        role = aws.iam.Role(
            f"{self._name}-{role_name}-role",
            assume_role_policy=assume_role_policy,
            tags={
                "Name": f"{self._name}-{role_name}-role",
                **self._tags,
            },
            opts=pulumi.ResourceOptions(
                parent=self,
                provider=self._provider,
                depends_on=[self.oidc_provider],
            ),
        )

        for i, policy_arn in enumerate(managed_policy_arns):
            aws.iam.RolePolicyAttachment(
                f"{self._name}-{role_name}-policy-{i}",
                role=role.name,
                policy_arn=policy_arn,
                opts=pulumi.ResourceOptions(
                    parent=self,
                    provider=self._provider,
                ),
            )

        return role

    def _create_node_group(
        self,
        node_role_arn: pulumi.Output[str],
        subnet_ids: pulumi.Input[Sequence[str]],
        settings: NodeGroupSettings,
    ) -> aws.eks.NodeGroup:
        """Create the managed node group behind a launch template."""
        environment = self._environment

        launch_template = aws.ec2.LaunchTemplate(
            f"{self._name}-{settings.name}-launch-template",
            name_prefix=f"{self._name}-{settings.name}-",
            metadata_options=aws.ec2.LaunchTemplateMetadataOptionsArgs(
                http_endpoint="enabled",
                http_tokens="required",
                http_put_response_hop_limit=2,
            ),
            block_device_mappings=[
                aws.ec2.LaunchTemplateBlockDeviceMappingArgs(
                    device_name="/dev/xvda",
                    ebs=aws.ec2.LaunchTemplateBlockDeviceMappingEbsArgs(
                        volume_size=settings.disk_size,
                        volume_type="gp3",
                        encrypted=True,
                        delete_on_termination=True,
                    ),
                ),
            ],
            tag_specifications=[
                aws.ec2.LaunchTemplateTagSpecificationArgs(
                    resource_type="instance",
                    tags={**self._tags, "Name": f"app-{environment}", "Environment": environment},
                ),
                aws.ec2.LaunchTemplateTagSpecificationArgs(
                    resource_type="volume",
                    tags={**self._tags, "Environment": environment},
                ),
            ],
            tags={"Name": f"{self._name}-{settings.name}-launch-template", **self._tags},
            opts=pulumi.ResourceOptions(parent=self, provider=self._provider),
        )

        return aws.eks.NodeGroup(
            f"{self._name}-{settings.name}-node-group",
            cluster_name=self.cluster.name,
            node_group_name=settings.name,
            node_role_arn=node_role_arn,
            subnet_ids=subnet_ids,
            launch_template=aws.eks.NodeGroupLaunchTemplateArgs(
                id=launch_template.id,
                version=launch_template.latest_version.apply(str),
            ),
            instance_types=[settings.instance_type],
            capacity_type=settings.capacity_type.value,
            ami_type=settings.ami_type.value,
            scaling_config=aws.eks.NodeGroupScalingConfigArgs(
                desired_size=settings.desired_size,
                min_size=settings.min_size,
                max_size=settings.max_size,
            ),
            update_config=aws.eks.NodeGroupUpdateConfigArgs(
                max_unavailable_percentage=25,
            ),
            tags={"Name": f"{self._name}-{settings.name}", **self._tags},
            opts=pulumi.ResourceOptions(
                parent=self,
                provider=self._provider,
                depends_on=[self.cluster, self.vpc_cni_addon, self.kube_proxy_addon],
            ),
        )
