"""Entry points invoked by the deployment pipeline."""
