from bundleflow.cli import run

run()
