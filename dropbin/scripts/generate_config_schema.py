import argparse
import json

from dropbin.models.config import DropbinConfig


def build_config_schema() -> dict:
    return DropbinConfig.model_json_schema()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--output",
        default="",
        help="File to write the schema to (prints to stdout if omitted)",
    )

    args = parser.parse_args()

    schema = build_config_schema()
    if args.output:
        with open(args.output, "w") as f:
            json.dump(schema, f, indent=2)
    else:
        print(json.dumps(schema, indent=2))
