from terrapin.cli.main import cli

cli()
