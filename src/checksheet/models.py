from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class FolderModel(Base):
    __tablename__ = "form_folders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    parent_id = Column(Integer, ForeignKey("form_folders.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class TemplateModel(Base):
    __tablename__ = "checksheet_templates"
    __table_args__ = (
        UniqueConstraint("parent_template_id", "version", name="uq_template_lineage_version"),
        # ids are baked into table names and image ETags, so SQLite must not reuse them
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    html_content = Column(Text, default="")
    original_html_content = Column(Text, default="")
    field_configurations = Column(Text, nullable=True)
    field_positions = Column(Text, nullable=True)
    sheets = Column(Text, nullable=True)
    css_content = Column(Text, default="")
    access_control = Column(Text, nullable=True)
    table_name = Column(String, unique=True, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    parent_template_id = Column(Integer, nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    folder_id = Column(Integer, ForeignKey("form_folders.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
    archived_at = Column(DateTime(timezone=True), nullable=True)


class TemplateFieldModel(Base):
    __tablename__ = "template_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(
        Integer, ForeignKey("checksheet_templates.id", ondelete="CASCADE"), index=True
    )
    instance_id = Column(String, nullable=False)
    field_name = Column(String, nullable=False)
    field_type = Column(String, nullable=False, default="text")
    label = Column(String, default="")
    decimal_places = Column(Integer, nullable=True)
    options = Column(Text, nullable=True)
    bg_color = Column(String)
    text_color = Column(String)
    exact_match_text = Column(Text)
    exact_match_bg_color = Column(String)
    min_length = Column(Integer, nullable=True)
    min_length_mode = Column(String)
    min_length_warning_bg = Column(String)
    max_length = Column(Integer, nullable=True)
    max_length_mode = Column(String)
    max_length_warning_bg = Column(String)
    multiline = Column(Boolean)
    auto_shrink_font = Column(Boolean)
    min_value = Column(Float, nullable=True)
    max_value = Column(Float, nullable=True)
    bg_color_in_range = Column(String)
    bg_color_below_min = Column(String)
    bg_color_above_max = Column(String)
    border_color_in_range = Column(String)
    border_color_below_min = Column(String)
    border_color_above_max = Column(String)
    formula = Column(Text)
    position = Column(Text)
    sheet_index = Column(Integer, default=0)
    date_format = Column(String)
    show_time_select = Column(Boolean)
    datetime_format = Column(String)
    min_date = Column(String, nullable=True)
    max_date = Column(String, nullable=True)
    allow_camera = Column(Boolean)
    allow_upload = Column(Boolean)
    allow_drawing = Column(Boolean)
    allow_cropping = Column(Boolean)
    max_file_size = Column(Integer, nullable=True)
    aspect_ratio_width = Column(Float, nullable=True)
    aspect_ratio_height = Column(Float, nullable=True)
    time_format = Column(String)
    allow_seconds = Column(Boolean)
    min_time = Column(String, nullable=True)
    max_time = Column(String, nullable=True)
    required = Column(Boolean, default=False)
    disabled = Column(Boolean, default=False)
    mode = Column(String)
    allow_text_input = Column(Boolean)
    allow_signature = Column(Boolean)
    allow_signature_over_text = Column(Boolean)
    text_font_size = Column(Integer)

    __table_args__ = (
        UniqueConstraint("template_id", "instance_id", name="uq_template_field_instance"),
    )


class TemplateImageModel(Base):
    __tablename__ = "template_images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(
        Integer, ForeignKey("checksheet_templates.id", ondelete="CASCADE"), index=True
    )
    original_path = Column(Text)
    filename = Column(String)
    mime_type = Column(String)
    image_data = Column(Text)
    size = Column(Integer)
    position_index = Column(Integer, nullable=True)
    original_src = Column(Text)
    element_id = Column(String)
    created_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("template_id", "position_index", name="uq_template_image_position"),
        {"sqlite_autoincrement": True},
    )
