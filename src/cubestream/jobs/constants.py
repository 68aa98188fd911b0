ARG_CUBE_NAME = "cube_name"
ARG_SEGMENT_ID = "segment_id"
ARG_JOB_ID = "job_id"
ARG_OUTPUT = "output"
ARG_SEGMENT_OFFSETS = "segment_offsets"
ARG_JOB_NAME = "job_name"

STEP_SEEK_OFFSETS = "Seek and update offset step"
STEP_SAVE_SOURCE_DATA = "Save data from streaming source"
STEP_UPDATE_TIME_RANGE = "Update segment time range"
STEP_MERGE_OFFSETS = "Merge offset step"


def save_data_job_name(cube_name: str) -> str:
    return f"Cube_Save_Stream_Data_{cube_name}_Step"
