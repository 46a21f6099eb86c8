import pulumi
from config import load_config, load_stack_settings, parse_project_config
from engine import PulumiEngine
from webstack import WebStackBuilder

def main():
    # Load YAML configuration
    try:
        project = parse_project_config(load_config("config.yaml"))
        settings = load_stack_settings(pulumi.Config(), project)
    except Exception as e:
        pulumi.log.error(f"Invalid configuration: {e}")
        raise

    engine = PulumiEngine(default_tags=project.tags)
    builder = WebStackBuilder(project, settings, engine)

    try:
        outputs = builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    for name, value in outputs.items():
        pulumi.export(name, value)

if __name__ == "__main__":
    main()
