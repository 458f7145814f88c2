# File names written into a packaging output directory
MANIFEST_FILE_NAME = "manifest.csv"
JSON_FILE_NAME_CAR_UPLOAD = "car.json"
CSV_FILE_NAME_CAR_UPLOAD = "car.csv"

CAR_EXTENSION = ".car"
PART_MARKER = ".carpart-"

# Raw manifest layout: four fixed columns, then a JSON detail that may itself
# contain the separator.
MANIFEST_SEPARATOR = ","
MANIFEST_MIN_FIELDS = 5
MANIFEST_DETAIL_INDEX = 4
MANIFEST_HEADER = ("payload_cid", "filename", "piece_cid", "car_size", "detail")

CSV_HEADERS = (
    "id",
    "source_file_name",
    "source_file_path",
    "source_file_md5",
    "source_file_size",
    "car_file_name",
    "car_file_path",
    "car_file_md5",
    "car_file_url",
    "car_file_size",
    "pay_load_cid",
    "piece_cid",
    "start_epoch",
    "source_id",
    "deals",
)

# CAR v1
CAR_VERSION = 1

# Multicodec / multihash codes (https://github.com/multiformats/multicodec)
CID_VERSION = 1
CODEC_RAW = 0x55
CODEC_DAG_JSON = 0x0129
CODEC_FIL_COMMITMENT_UNSEALED = 0xF101
MH_SHA2_256 = 0x12
MH_SHA2_256_TRUNC254_PADDED = 0x1012

# Piece commitment
FR32_UNPADDED_BLOCK = 127
FR32_PADDED_BLOCK = 128
NODE_SIZE = 32
MIN_PIECE_SIZE = 128

DEFAULT_CHUNK_SIZE = 1_048_576  # 1 MiB leaf blocks
DEFAULT_PARALLEL = 4
DEFAULT_LOG_LEVEL = "INFO"
