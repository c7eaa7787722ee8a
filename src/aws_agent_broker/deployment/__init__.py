"""CloudFormation deployment coordination."""
