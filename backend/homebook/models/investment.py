from pydantic import BaseModel, Field


class CategoryRequest(BaseModel):
    category_name: str = Field(min_length=1)


class SubcategoryCreateRequest(BaseModel):
    category_id: int = Field(gt=0)
    subcategory_name: str = Field(min_length=1)
    is_options: bool = False


class SubcategoryUpdateRequest(BaseModel):
    subcategory_name: str | None = None
    is_options: bool | None = None
