import json

import pulumi
import pulumi_aws as aws

NODE_POLICIES = [
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
    "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore",
]


def _service_assume_role_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


class EksIamRoles(pulumi.ComponentResource):
    """IAM roles for the EKS control plane and the worker nodes.

    The CNI policy is not attached to the node role; aws-node gets it
    through its own IRSA role (see EksCluster).
    """

    def __init__(
        self,
        name: str,
        provider: aws.Provider,
        opts: pulumi.ResourceOptions | None = None,
    ):
        super().__init__("eksbluegreen:infrastructure:EksIamRoles", name, None, opts)

        child_opts = pulumi.ResourceOptions(parent=self, provider=provider)

        self.cluster_role = aws.iam.Role(
            f"{name}-eks-cluster-role",
            assume_role_policy=_service_assume_role_policy("eks.amazonaws.com"),
            opts=child_opts,
        )

        aws.iam.RolePolicyAttachment(
            f"{name}-eks-cluster-policy",
            role=self.cluster_role.name,
            policy_arn="arn:aws:iam::aws:policy/AmazonEKSClusterPolicy",
            opts=child_opts,
        )

        aws.iam.RolePolicyAttachment(
            f"{name}-eks-vpc-resource-controller",
            role=self.cluster_role.name,
            policy_arn="arn:aws:iam::aws:policy/AmazonEKSVPCResourceController",
            opts=child_opts,
        )

        self.node_role = aws.iam.Role(
            f"{name}-eks-node-role",
            assume_role_policy=_service_assume_role_policy("ec2.amazonaws.com"),
            opts=child_opts,
        )

        for i, policy_arn in enumerate(NODE_POLICIES):
            aws.iam.RolePolicyAttachment(
                f"{name}-eks-node-policy-{i}",
                role=self.node_role.name,
                policy_arn=policy_arn,
                opts=child_opts,
            )

        self.cluster_role_arn = self.cluster_role.arn
        self.node_role_arn = self.node_role.arn

        self.register_outputs(
            {
                "cluster_role_arn": self.cluster_role_arn,
                "node_role_arn": self.node_role_arn,
            }
        )
