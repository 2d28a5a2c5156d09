import json
import lxmod.config as config

lxdumpFile = config.LxdumpFile()

lxdumpSchema = lxdumpFile.model_json_schema(by_alias=False)
lxdumpSchema["$schema"] = "http://json-schema.org/draft-07/schema#"

with open("lxdump-schema.json", "wt", encoding="utf-8") as schema:
    schema.write(json.dumps(lxdumpSchema, indent=2))
