from gcp_iam.cli import cli

if __name__ == "__main__":
    cli()
