"""Shared test fixtures for railsight."""

import pytest

SCHEMA_RB = """\
ActiveRecord::Schema[7.1].define(version: 2024_05_01_120000) do
  create_table "users", force: :cascade do |t|
    t.string "email", null: false
    t.string "name"
    t.timestamps
  end

  create_table "posts", force: :cascade do |t|
    t.bigint "user_id", null: false
    t.string "title"
    t.jsonb "metadata", default: {}
    t.timestamps
  end

  add_foreign_key "posts", "users"
end
"""

USER_RB = """\
class User < ApplicationRecord
  has_many :posts
  before_save :normalize_email

  def display_name
    name.presence || email
  end

  private

  def normalize_email
    self.email = email.downcase
  end
end
"""

POST_RB = """\
class Post < ApplicationRecord
  belongs_to :user
end
"""

USERS_CONTROLLER_RB = """\
class UsersController < ApplicationController
  def show
    @user = User.find(params[:id])
  end

  private

  def user_params
    params.require(:user)
  end
end
"""

LEGACY_RB = """\
class LegacyReport
  TEMPLATE = "report"

  def run
    build
  end

  private

  def build
    "done"
  end

  def orphan
    nil
  end
end
"""

ROUTES_RB = """\
Rails.application.routes.draw do
  resources :users
  get '/about', to: 'pages#about', as: 'about'
end
"""


@pytest.fixture
def rails_project(tmp_path):
    """Create a small Rails workspace on disk."""
    files = {
        "db/schema.rb": SCHEMA_RB,
        "config/routes.rb": ROUTES_RB,
        "app/models/user.rb": USER_RB,
        "app/models/post.rb": POST_RB,
        "app/controllers/users_controller.rb": USERS_CONTROLLER_RB,
        "lib/legacy_report.rb": LEGACY_RB,
        "vendor/bundle/gems/rack/lib/rack.rb": "class Rack\nend\n",
    }
    for rel, text in files.items():
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return tmp_path
